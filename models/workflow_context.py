from contextlib import contextmanager
from copy import deepcopy
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field

from models.resolution import Candidate
from utils.config import ActiveConfig
from utils.exceptions import SubflowError
from utils.logger import logger

# Slot where a create step leaves the id of the record it created
CREATED_ENTITY_KEY = "created_entity_id"
# Step name whose prompt is waiting for the next user message
AWAITING_STEP_KEY = "awaiting_step"


class Message(BaseModel):
    role: str
    content: str


class ActiveSubflow(BaseModel):
    """Marks that a nested workflow owns the step cursor."""

    workflow_id: str
    parent_field_name: str
    entity_name: str
    step_prefix: str


class StackFrame(BaseModel):
    """Parent cursor and data saved when a subflow starts."""

    workflow: Optional[str] = None
    step: Optional[str] = None
    active_subflow: Optional[ActiveSubflow] = None
    collected_data: Dict[str, Any] = Field(default_factory=dict)


class FieldPhase(str, Enum):
    IDLE = "idle"
    AWAITING_DUPLICATE_CHOICE = "awaiting_duplicate_choice"
    AWAITING_CREATE_CONFIRM = "awaiting_create_confirm"
    CREATING_VIA_SUBFLOW = "creating_via_subflow"
    DONE = "done"


class FieldState(BaseModel):
    """Resolution bookkeeping for one field, carried across turns."""

    phase: FieldPhase = FieldPhase.IDLE
    identifier: Optional[str] = None
    extracted_data: Dict[str, Any] = Field(default_factory=dict)
    candidates: List[Candidate] = Field(default_factory=list)
    validated: List[Dict[str, Any]] = Field(default_factory=list)
    missing: List[Dict[str, Any]] = Field(default_factory=list)
    creation_index: int = 0
    current_item: Optional[Dict[str, Any]] = None

    @property
    def is_pending(self) -> bool:
        return self.phase not in (FieldPhase.IDLE, FieldPhase.DONE)


class WorkflowContext(BaseModel):
    """
    Per-session state carried between conversational turns.

    Holds the free-form state bag, the workflow's collected data, the step
    cursor, the stack of suspended parent workflows and the per-field
    resolution state. The whole object is persisted by the session store.
    """

    session_id: str
    user_id: Optional[str] = None
    workspace_id: Optional[Any] = None
    state: Dict[str, Any] = Field(default_factory=dict)
    collected_data: Dict[str, Any] = Field(default_factory=dict)
    conversation_history: List[Message] = Field(default_factory=list)
    current_step: Optional[str] = None
    current_workflow: Optional[str] = None
    workflow_stack: List[StackFrame] = Field(default_factory=list)
    active_subflow: Optional[ActiveSubflow] = None
    fields: Dict[str, FieldState] = Field(default_factory=dict)

    # ── State bag ────────────────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.state[key] = value

    def forget(self, *keys: str) -> None:
        for key in keys:
            self.state.pop(key, None)

    # ── Conversation ─────────────────────────────────────────────────────

    def add_user_message(self, content: str) -> None:
        self._append_message("user", content)

    def add_assistant_message(self, content: str) -> None:
        self._append_message("assistant", content)

    def _append_message(self, role: str, content: str) -> None:
        self.conversation_history.append(Message(role=role, content=content))
        limit = ActiveConfig.MAX_HISTORY_MESSAGES
        if len(self.conversation_history) > limit:
            self.conversation_history = self.conversation_history[-limit:]

    def last_user_message(self) -> str:
        for message in reversed(self.conversation_history):
            if message.role == "user":
                return message.content
        return ""

    # ── Field resolution state ───────────────────────────────────────────

    def field_state(self, field: str) -> FieldState:
        if field not in self.fields:
            self.fields[field] = FieldState()
        return self.fields[field]

    def clear_field(self, field: str) -> None:
        self.fields.pop(field, None)

    # ── Workflow stack ───────────────────────────────────────────────────

    def push_frame(self, frame: StackFrame) -> None:
        """
        Push a parent frame before entering a subflow.

        Raises:
            SubflowError: If the stack would exceed MAX_SUBFLOW_DEPTH
        """
        if len(self.workflow_stack) >= ActiveConfig.MAX_SUBFLOW_DEPTH:
            raise SubflowError(f"Subflow nesting exceeds {ActiveConfig.MAX_SUBFLOW_DEPTH} levels")
        self.workflow_stack.append(frame)
        logger.debug(f"Pushed frame for workflow {frame.workflow} (depth {len(self.workflow_stack)})")

    def pop_frame(self) -> StackFrame:
        if not self.workflow_stack:
            raise SubflowError("No parent workflow to return to")
        frame = self.workflow_stack.pop()
        logger.debug(f"Popped frame for workflow {frame.workflow} (depth {len(self.workflow_stack)})")
        return frame

    def peek_frame(self) -> Optional[StackFrame]:
        return self.workflow_stack[-1] if self.workflow_stack else None

    @property
    def parent_collected_data(self) -> Dict[str, Any]:
        frame = self.peek_frame()
        return frame.collected_data if frame else {}

    def subflow_completed(self) -> bool:
        """A subflow is complete once the cursor no longer carries its step prefix."""
        if self.active_subflow is None:
            return False
        return not (self.current_step or "").startswith(self.active_subflow.step_prefix)

    def step_prefix_for(self, workflow_id: Optional[str]) -> str:
        """Return the step prefix the given workflow runs under, or "" at top level."""
        if self.active_subflow and self.active_subflow.workflow_id == workflow_id:
            return self.active_subflow.step_prefix
        for frame in reversed(self.workflow_stack):
            if frame.active_subflow and frame.active_subflow.workflow_id == workflow_id:
                return frame.active_subflow.step_prefix
        return ""

    # ── Staging ──────────────────────────────────────────────────────────

    def snapshot(self) -> "WorkflowContext":
        return self.model_copy(deep=True)

    def restore(self, snapshot: "WorkflowContext") -> None:
        for name in type(self).model_fields:
            setattr(self, name, deepcopy(getattr(snapshot, name)))

    @contextmanager
    def transaction(self) -> Iterator["WorkflowContext"]:
        """Roll the context back to its entry state if the block raises."""
        snapshot = self.snapshot()
        try:
            yield self
        except Exception:
            self.restore(snapshot)
            logger.warning(f"Rolled back context for session {self.session_id}")
            raise
