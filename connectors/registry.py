from typing import Dict, Optional

from connectors.entity_store import EntityStore
from utils.exceptions import ConfigurationError
from utils.logger import logger


class EntityStoreRegistry:
    """Registry of entity stores keyed by entity-type identifier."""

    def __init__(self):
        """Initialize an empty store registry."""
        self.stores: Dict[str, EntityStore] = {}
        logger.debug("Initialized EntityStoreRegistry")

    def register(self, model: str, store: EntityStore) -> None:
        """
        Register a store for an entity type.

        Args:
            model (str): Entity-type identifier
            store (EntityStore): Store instance
        """
        logger.info(f"Registering entity store: {type(store).__name__} (model: {model})")
        self.stores[model] = store

    def get(self, model: str) -> Optional[EntityStore]:
        """
        Retrieve a store by entity type.

        Args:
            model (str): Entity-type identifier

        Returns:
            EntityStore: Store instance or None if not found
        """
        store = self.stores.get(model)
        logger.debug(f"Retrieving entity store: {model}, Found: {store is not None}")
        return store

    def require(self, model: str) -> EntityStore:
        store = self.get(model)
        if store is None:
            raise ConfigurationError(f"No entity store registered for model '{model}'")
        return store
