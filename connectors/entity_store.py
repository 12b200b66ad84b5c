from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.resolution import ResolutionConfig
from utils.config import ActiveConfig
from utils.exceptions import NotFoundError
from utils.logger import logger


class EntityQuery(BaseModel):
    """Search against one entity type: a term over search fields, scoped by filters."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    term: Optional[str] = None
    search_fields: List[str] = Field(default_factory=list)
    match: Literal["exact", "contains"] = "exact"
    scope: Dict[str, Any] = Field(default_factory=dict)
    predicate: Optional[Callable[[Dict[str, Any]], bool]] = None

    @classmethod
    def for_config(cls, config: ResolutionConfig, term: Optional[str], match: str = "exact") -> "EntityQuery":
        filters = config.filters
        return cls(
            term=term,
            search_fields=list(config.search_fields),
            match=match,
            scope=filters if isinstance(filters, dict) else {},
            predicate=filters if callable(filters) else None,
        )

    def matches(self, record: Dict[str, Any]) -> bool:
        for key, expected in self.scope.items():
            if record.get(key) != expected:
                return False
        if self.predicate is not None and not self.predicate(record):
            return False
        if self.term is None:
            return True
        needle = str(self.term).strip().lower()
        for field in self.search_fields:
            value = record.get(field)
            if value is None:
                continue
            haystack = str(value).strip().lower()
            if self.match == "exact" and haystack == needle:
                return True
            if self.match == "contains" and needle in haystack:
                return True
        return False


class EntityStore:
    """Capability interface for persisting and searching one entity type."""

    def __init__(self, model: str):
        """
        Initialize an entity store.

        Args:
            model (str): Entity-type identifier served by this store
        """
        self.model = model
        logger.info(f"Initialized entity store: {model}")

    def find_one(self, query: EntityQuery) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def find_many(self, query: EntityQuery, limit: int = 20) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def create(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def get(self, entity_id: Any) -> Dict[str, Any]:
        raise NotImplementedError

    def list_writable_fields(self) -> List[str]:
        raise NotImplementedError


class InMemoryEntityStore(EntityStore):
    """Entity store backed by a list of dicts, with integer ids."""

    def __init__(self, model: str, writable_fields: Iterable[str], records: Optional[Iterable[Dict[str, Any]]] = None):
        """
        Initialize the in-memory store.

        Args:
            model (str): Entity-type identifier
            writable_fields (Iterable[str]): Fields accepted by create()
            records (Iterable[dict], optional): Seed records; missing ids are assigned
        """
        super().__init__(model)
        self.writable_fields = list(writable_fields)
        self.records: List[Dict[str, Any]] = []
        self._next_id = 1
        for record in records or []:
            self._insert(dict(record))

    def _insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if record.get("id") is None:
            record["id"] = self._next_id
        if isinstance(record["id"], int):
            self._next_id = max(self._next_id, record["id"] + 1)
        self.records.append(record)
        return record

    def find_one(self, query: EntityQuery) -> Optional[Dict[str, Any]]:
        for record in self.records:
            if query.matches(record):
                logger.debug(f"{self.model}: found record {record['id']} for '{query.term}'")
                return dict(record)
        return None

    def find_many(self, query: EntityQuery, limit: int = 20) -> List[Dict[str, Any]]:
        hits = [dict(record) for record in self.records if query.matches(record)]
        logger.debug(f"{self.model}: {len(hits)} record(s) match '{query.term}' ({query.match})")
        return hits[:limit]

    def create(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        record = {key: value for key, value in fields.items() if key in self.writable_fields}
        record = self._insert(record)
        logger.info(f"{self.model}: created record {record['id']}")
        return dict(record)

    def get(self, entity_id: Any) -> Dict[str, Any]:
        for record in self.records:
            if record["id"] == entity_id:
                return dict(record)
        raise NotFoundError(f"{self.model} {entity_id} does not exist")

    def list_writable_fields(self) -> List[str]:
        return list(self.writable_fields)


WORKSPACE_FIELDS = ("workspace_id", "workspace")
CREATOR_FIELDS = ("created_by", "creator_id", "user_id")


def owner_defaults(writable_fields: Iterable[str], workspace_id: Any = None, user_id: Any = None) -> Dict[str, Any]:
    """
    Workspace and creator values for a new record.

    Only the first writable field of each kind is filled; the workspace falls
    back to ActiveConfig.DEFAULT_WORKSPACE_ID and the creator is left out when
    no user is known.
    """
    writable = list(writable_fields)
    data: Dict[str, Any] = {}
    for field in WORKSPACE_FIELDS:
        if field in writable:
            data[field] = workspace_id if workspace_id is not None else ActiveConfig.DEFAULT_WORKSPACE_ID
            break
    if user_id is not None:
        for field in CREATOR_FIELDS:
            if field in writable:
                data[field] = user_id
                break
    return data
