from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ResolutionConfig(BaseModel):
    """Static, per-field description of how an entity reference is resolved."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    model: str = Field(description="Entity-type identifier registered in the EntityStoreRegistry")
    search_fields: List[str] = Field(default_factory=lambda: ["name"], description="Match fields in priority order")
    identifier_field: Optional[str] = Field(default=None, description="Field holding the identifier on items and new records")
    quantity_field: str = Field(default="quantity", description="Quantity key on batch items")
    interactive: bool = True
    confirm_before_create: bool = False
    check_duplicates: bool = False
    ask_on_duplicate: bool = False
    filters: Optional[Union[Dict[str, Any], Callable[[Dict[str, Any]], bool]]] = Field(
        default=None, description="Equality scope or predicate applied to every search"
    )
    subflow: Optional[str] = Field(default=None, description="Workflow id used to create the entity interactively")
    include_fields: List[str] = Field(default_factory=list)
    base_fields: List[str] = Field(default_factory=lambda: ["id", "name"])
    required_item_fields: List[str] = Field(default_factory=list)
    display_fields: List[str] = Field(default_factory=list)
    display_name: Optional[str] = None
    friendly_name: Optional[str] = None
    defaults: Dict[str, Any] = Field(default_factory=dict)
    multiple: bool = False

    @property
    def entity_name(self) -> str:
        """Human readable, singular entity name ("sales_order" -> "Sales Order")."""
        return " ".join(part.capitalize() for part in self.model.replace("-", "_").split("_") if part)


class Candidate(BaseModel):
    """A ranked entity-store hit."""

    id: Any
    fields: Dict[str, Any] = Field(default_factory=dict)
    similarity_score: int = Field(default=0, ge=0, le=100)
    matched_field: Optional[str] = None

    def display_value(self, field: Optional[str] = None) -> str:
        if field and self.fields.get(field) not in (None, ""):
            return str(self.fields[field])
        for key in ("name", "title", "label"):
            if self.fields.get(key):
                return str(self.fields[key])
        return str(self.id)


class ActionResult(BaseModel):
    """Outcome of one resolution attempt."""

    status: str

    @property
    def is_terminal(self) -> bool:
        return self.status != "needs_user_input"

    @property
    def user_message(self) -> str:
        return ""


class Success(ActionResult):
    status: Literal["success"] = "success"
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def user_message(self) -> str:
        return self.message


class Failure(ActionResult):
    status: Literal["failure"] = "failure"
    error: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def user_message(self) -> str:
        return self.error


class NeedsUserInput(ActionResult):
    status: Literal["needs_user_input"] = "needs_user_input"
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def user_message(self) -> str:
        return self.message


class IntentLabel(str, Enum):
    CONFIRM = "confirm"
    DECLINE = "decline"
    MODIFY = "modify"
    USE = "use"
    CREATE = "create"
    UNCLEAR = "unclear"


class Intent(BaseModel):
    """Structured reading of a free-text user reply."""

    label: IntentLabel
    index: Optional[int] = Field(default=None, description="Zero-based candidate index for USE")

    @property
    def is_unclear(self) -> bool:
        return self.label == IntentLabel.UNCLEAR

    @classmethod
    def unclear(cls) -> "Intent":
        return cls(label=IntentLabel.UNCLEAR)
