from typing import Any, Dict, Iterable, List, Optional, Tuple

from agents.duplicate_ranker import DuplicateRanker
from connectors.entity_store import EntityQuery
from connectors.registry import EntityStoreRegistry
from models.resolution import Candidate, ResolutionConfig
from services.datadog_service import DataDogService
from utils.config import ActiveConfig
from utils.exceptions import ProviderError
from utils.logger import logger


def project_fields(
    record: Dict[str, Any],
    include_fields: Iterable[str] = (),
    base_fields: Iterable[str] = ("id", "name"),
    user_input: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Merge a stored record into the shape kept in collected data.

    Base fields are always copied, include fields only fill gaps left by the
    user input, and user-entered values win over stored values.

    Args:
        record (dict): Stored entity
        include_fields (Iterable[str]): Extra fields to copy from the record
        base_fields (Iterable[str]): Fields always copied from the record
        user_input (dict, optional): Values typed by the user

    Returns:
        dict: Projected entity
    """
    user_input = user_input or {}
    projected = {field: record.get(field) for field in base_fields if field in record}
    for field in include_fields:
        if field in record and user_input.get(field) in (None, ""):
            projected[field] = record[field]
    for key, value in user_input.items():
        if value not in (None, "") or key not in projected:
            projected[key] = value
    if "id" in record:
        projected["id"] = record["id"]
    return projected


class EntitySearch:
    """Exact and similarity searches over the registered entity stores."""

    def __init__(self, registry: EntityStoreRegistry, ranker: Optional[DuplicateRanker] = None, candidate_limit: int = None):
        """
        Initialize the search service.

        Args:
            registry (EntityStoreRegistry): Stores keyed by entity type
            ranker (DuplicateRanker, optional): Candidate scorer. Defaults to a heuristic ranker.
            candidate_limit (int, optional): Wide-net size. Defaults to ActiveConfig.DUPLICATE_CANDIDATE_LIMIT.
        """
        self.registry = registry
        self.ranker = ranker or DuplicateRanker()
        self.candidate_limit = candidate_limit or ActiveConfig.DUPLICATE_CANDIDATE_LIMIT
        logger.debug("Initialized EntitySearch")

    def find_exact(self, config: ResolutionConfig, identifier: str, search_fields: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        """
        Case-insensitive equality search on the configured search fields.

        Args:
            config (ResolutionConfig): Field configuration
            identifier (str): Search value
            search_fields (list, optional): Override of config.search_fields

        Returns:
            dict: Matching record or None
        """
        store = self.registry.require(config.model)
        query = EntityQuery.for_config(config, str(identifier), match="exact")
        if search_fields:
            query.search_fields = list(search_fields)
        record = store.find_one(query)
        logger.info(f"Exact search for {config.model} '{identifier}': {'hit' if record else 'miss'}")
        return record

    def find_similar(self, config: ResolutionConfig, identifier: str) -> Tuple[Optional[Dict[str, Any]], List[Candidate]]:
        """
        Wide substring search followed by similarity ranking.

        The unbounded exact search runs first, so a record equal to the
        identifier on any search field is returned even when more than
        candidate_limit records contain it. When the store cannot run the
        wide search, only the exact result is used.

        Args:
            config (ResolutionConfig): Field configuration
            identifier (str): Search value

        Returns:
            tuple: (exact match or None, ranked candidates)
        """
        store = self.registry.require(config.model)
        # The wide search is capped, so the exact record may not be among its hits
        exact = self._exact_only(config, identifier)
        if exact:
            return exact, []

        query = EntityQuery.for_config(config, str(identifier), match="contains")
        try:
            records = store.find_many(query, limit=self.candidate_limit)
        except Exception as e:
            logger.warning(f"Wide search for {config.model} failed after an exact miss: {e}")
            DataDogService.increment_metric("entity_resolution.provider_fallback", tags={"component": "search", "model": config.model})
            return None, []

        candidates = self.ranker.rank(str(identifier), records, config.search_fields)
        return None, candidates

    def _exact_only(self, config: ResolutionConfig, identifier: str) -> Optional[Dict[str, Any]]:
        try:
            return self.find_exact(config, identifier)
        except Exception as e:
            raise ProviderError(f"Search for {config.model} failed: {e}")
