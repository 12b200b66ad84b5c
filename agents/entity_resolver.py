import traceback
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, TypedDict

from langgraph.graph import END, StateGraph

from agents.entity_search import EntitySearch, project_fields
from agents.intent_interpreter import IntentInterpreter, build_interpreter
from connectors.entity_store import EntityStore, owner_defaults
from connectors.registry import EntityStoreRegistry
from engine.executors import WorkflowRegistry
from engine.subflow_orchestrator import SubflowOrchestrator
from models.resolution import ActionResult, Candidate, Failure, IntentLabel, NeedsUserInput, ResolutionConfig, Success
from models.workflow_context import FieldPhase, FieldState, WorkflowContext
from services.datadog_service import DataDogService
from utils.exceptions import AmbiguousMatchError, ConfigurationError, NotFoundError, UserDeclinedError
from utils.logger import logger

IDENTIFIER_FIELDS = ("name", "title", "label", "identifier")


class ResolverState(TypedDict):
    """State passed between the resolver graph's nodes for one resolution call."""
    field: str
    resolution_config: ResolutionConfig
    identifier: Any
    search_value: str
    ctx: WorkflowContext
    route: str
    result: Optional[ActionResult]
    error: Dict[str, Any]


def resolution_error_handler(func: Callable[..., ResolverState]) -> Callable[..., ResolverState]:
    """
    Map node exceptions onto resolver results.

    AmbiguousMatchError presents the candidates, UserDeclinedError cancels the
    field, ConfigurationError is a Failure and anything else becomes a retry
    prompt.
    """
    @wraps(func)
    def wrapper(self: "EntityResolver", state: ResolverState) -> ResolverState:
        try:
            return func(self, state)
        except AmbiguousMatchError as e:
            return self.present_duplicates(state, e.candidates)
        except UserDeclinedError as e:
            state["ctx"].clear_field(state["field"])
            DataDogService.increment_metric("entity_resolution.declined", tags={"field": state["field"], "model": state["resolution_config"].model})
            state["result"] = Failure(error=e.message, metadata={"reason": "declined", "field": state["field"]})
        except ConfigurationError as e:
            state["result"] = Failure(error=e.message, metadata={"error": "configuration", "field": state["field"]})
            state["error"] = {"message": e.message, "function": func.__name__}
        except Exception as e:
            error_details: Dict[str, str] = {
                "message": str(e),
                "traceback": traceback.format_exc(),
                "function": func.__name__,
            }
            logger.error(f"Error in {func.__name__}: {error_details}", extra={"function": func.__name__})
            DataDogService.capture_exception(e, tags={"field": state["field"], "model": state["resolution_config"].model})
            friendly = self.orchestrator.friendly_name(state["field"], state["resolution_config"])
            state["result"] = NeedsUserInput(
                message=f"Something went wrong while resolving the {friendly}. Would you like to try again?",
                metadata={"error": str(e), "field": state["field"]},
            )
            state["error"] = error_details
        state["route"] = "end"
        return state
    return wrapper


def build_entity_fields(store: EntityStore, config: ResolutionConfig, identifier: str, ctx: WorkflowContext,
                        extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Values for creating an entity without asking the user anything.

    The identifier goes to the configured identifier field or the first
    name-like writable field, then workspace and creator are defaulted,
    then writable extra values are added and static defaults win last.
    """
    writable = store.list_writable_fields()
    identifier_field = config.identifier_field or next((f for f in IDENTIFIER_FIELDS if f in writable), None)
    data: Dict[str, Any] = {}
    if identifier_field and identifier_field in writable:
        data[identifier_field] = identifier
    data.update(owner_defaults(writable, ctx.workspace_id, ctx.user_id))
    for key, value in (extra or {}).items():
        if key in writable and key not in data and value not in (None, ""):
            data[key] = value
    data.update(config.defaults)
    return data


def duplicate_prompt(entity: str, candidates: List[Candidate], display_fields: List[str]) -> str:
    """User-facing list of duplicate candidates."""
    def details(candidate: Candidate) -> str:
        for field in display_fields:
            value = candidate.fields.get(field)
            if value not in (None, ""):
                return f" - {value}"
        return ""

    if len(candidates) == 1:
        candidate = candidates[0]
        message = f"Found existing {entity}: **{candidate.display_value()}** (Match: {candidate.similarity_score}%)"
        message += details(candidate)
        message += "\n\nWould you like to:\n"
        message += f"1. Use this {entity} (reply 'use' or 'yes')\n"
        message += f"2. Create a new {entity} (reply 'new' or 'create')"
        return message

    message = f"Found {len(candidates)} similar {entity}s:\n\n"
    for position, candidate in enumerate(candidates, start=1):
        message += f"{position}. **{candidate.display_value()}** ({candidate.similarity_score}% match){details(candidate)}\n"
    message += "\nWould you like to:\n"
    message += f"- Use one of these (reply with number 1-{len(candidates)})\n"
    message += f"- Create a new {entity} (reply 'new' or 'create')"
    return message


class EntityResolver:
    """
    Resolves one entity reference to a stored record, over as many turns as it takes.

    Each call starts from the field's persisted phase: a pending duplicate
    choice or create confirmation is continued, a finished subflow is
    collected, otherwise the store is searched afresh.
    """

    stores: EntityStoreRegistry
    search: EntitySearch
    interpreter: IntentInterpreter
    orchestrator: SubflowOrchestrator
    graph: Any  # Compiled LangGraph

    def __init__(
        self,
        stores: EntityStoreRegistry,
        search: Optional[EntitySearch] = None,
        interpreter: Optional[IntentInterpreter] = None,
        orchestrator: Optional[SubflowOrchestrator] = None,
    ) -> None:
        self.stores = stores
        self.search = search or EntitySearch(stores)
        self.interpreter = interpreter or build_interpreter()
        self.orchestrator = orchestrator or SubflowOrchestrator(WorkflowRegistry())
        self.graph = self._build_graph()
        logger.debug("Initialized EntityResolver")

    def _build_graph(self) -> StateGraph:
        """Build the resolution state graph."""
        workflow = StateGraph(ResolverState)
        workflow.add_node("prepare", self.prepare)
        workflow.add_node("search_duplicates", self.search_duplicates)
        workflow.add_node("search_exact", self.search_exact)
        workflow.add_node("duplicate_choice", self.duplicate_choice)
        workflow.add_node("start_creation", self.start_creation)
        workflow.add_node("confirm_creation", self.confirm_creation)
        workflow.add_node("create_auto", self.create_auto)
        workflow.add_node("start_subflow", self.start_subflow)
        workflow.add_node("finish_subflow", self.finish_subflow)

        workflow.set_entry_point("prepare")
        routes = {
            "search_duplicates": "search_duplicates",
            "search_exact": "search_exact",
            "duplicate_choice": "duplicate_choice",
            "start_creation": "start_creation",
            "confirm_creation": "confirm_creation",
            "create_auto": "create_auto",
            "start_subflow": "start_subflow",
            "finish_subflow": "finish_subflow",
            "end": END,
        }
        for node in ["prepare"] + [name for name in routes if name != "end"]:
            workflow.add_conditional_edges(node, self._route, routes)
        return workflow.compile()

    def _route(self, state: ResolverState) -> str:
        route = state["route"] or "end"
        logger.debug(f"Resolver route for {state['field']}: {route}")
        return route

    def resolve(self, field: str, config: ResolutionConfig, identifier: Any, ctx: WorkflowContext) -> ActionResult:
        """
        Resolve an entity reference for a field.

        Args:
            field (str): Field receiving the entity id, e.g. "customer_id"
            config (ResolutionConfig): How the field is resolved
            identifier (str | dict): Free text, or structured data searched by config.search_fields
            ctx (WorkflowContext): Session context, mutated in place

        Returns:
            ActionResult: Success with the entity id, Failure, or NeedsUserInput for another turn
        """
        snapshot = ctx.snapshot()
        state: ResolverState = {
            "field": field,
            "resolution_config": config,
            "identifier": identifier,
            "search_value": "",
            "ctx": ctx,
            "route": "",
            "result": None,
            "error": {},
        }
        try:
            final = self.graph.invoke(state)
        except Exception as e:
            logger.error(f"Resolver graph failed for {field}: {e}", exc_info=True)
            DataDogService.capture_exception(e, tags={"field": field, "model": config.model})
            final = dict(state, result=NeedsUserInput(
                message=f"Something went wrong while resolving the {self.orchestrator.friendly_name(field, config)}. Would you like to try again?",
                metadata={"error": str(e), "field": field},
            ), error={"message": str(e)})

        if final.get("error"):
            ctx.restore(snapshot)
        result = final.get("result") or NeedsUserInput(
            message=f"Could you tell me which {config.entity_name.lower()} you mean?",
            metadata={"error": "no_result", "field": field},
        )
        logger.info(f"Resolved {field}: {result.status}")
        return result

    # ── Nodes ────────────────────────────────────────────────────────────

    @resolution_error_handler
    def prepare(self, state: ResolverState) -> ResolverState:
        """Pick the search value and the branch to continue from."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        self.stores.require(config.model)
        fs = ctx.field_state(field)
        state["search_value"] = self._search_value(state["identifier"], config, fs)

        if ctx.active_subflow is not None and ctx.active_subflow.parent_field_name == field:
            if ctx.subflow_completed():
                state["route"] = "finish_subflow"
                return state
            state["result"] = NeedsUserInput(
                message=f"We're still creating the {config.entity_name.lower()}.",
                metadata={"field": field, "step": ctx.current_step},
            )
            state["route"] = "end"
            return state

        if fs.phase == FieldPhase.AWAITING_DUPLICATE_CHOICE:
            state["route"] = "duplicate_choice"
        elif fs.phase == FieldPhase.AWAITING_CREATE_CONFIRM:
            state["route"] = "confirm_creation"
        elif fs.phase == FieldPhase.DONE and ctx.collected_data.get(field) is not None and fs.identifier == state["search_value"]:
            state["result"] = Success(message=f"{config.entity_name} already resolved", data={field: ctx.collected_data[field]})
            state["route"] = "end"
        else:
            if fs.phase != FieldPhase.IDLE:
                logger.warning(f"Resetting stale {fs.phase.value} state for {field}")
                fs.phase = FieldPhase.IDLE
            if not state["search_value"]:
                state["result"] = NeedsUserInput(
                    message=f"Which {config.entity_name.lower()} should I use?",
                    metadata={"error": "missing_identifier", "field": field},
                )
                state["route"] = "end"
            elif config.check_duplicates and config.ask_on_duplicate:
                state["route"] = "search_duplicates"
            else:
                state["route"] = "search_exact"
        return state

    @resolution_error_handler
    def search_duplicates(self, state: ResolverState) -> ResolverState:
        """Fuzzy search; an exact hit resolves, similar hits are offered to the user."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        fs = ctx.field_state(field)
        fs.identifier = state["search_value"]
        exact, candidates = self.search.find_similar(config, state["search_value"])
        if exact:
            return self._resolved(state, exact, f"Found existing {config.entity_name}")
        if not candidates:
            state["route"] = "start_creation"
            return state
        raise AmbiguousMatchError(f"{len(candidates)} similar {config.model} record(s) for '{state['search_value']}'", candidates, field=field)

    def present_duplicates(self, state: ResolverState, candidates: List[Candidate]) -> ResolverState:
        """Offer the ranked candidates and wait for the user's choice."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        fs = ctx.field_state(field)
        fs.phase = FieldPhase.AWAITING_DUPLICATE_CHOICE
        fs.candidates = candidates
        entity = (config.display_name or config.entity_name).lower()
        logger.info(f"Presenting {len(candidates)} duplicate candidate(s) for {field} '{state['search_value']}'")
        DataDogService.increment_metric("entity_resolution.duplicates_presented", tags={"field": field, "model": config.model})
        state["result"] = NeedsUserInput(
            message=duplicate_prompt(entity, candidates, config.display_fields),
            metadata={"field": field, "candidates": [c.id for c in candidates]},
        )
        state["route"] = "end"
        return state

    @resolution_error_handler
    def search_exact(self, state: ResolverState) -> ResolverState:
        """Case-insensitive equality search."""
        config = state["resolution_config"]
        record = self.search.find_exact(config, state["search_value"])
        if record:
            return self._resolved(state, record, f"Found existing {config.entity_name}")
        state["route"] = "start_creation"
        return state

    @resolution_error_handler
    def duplicate_choice(self, state: ResolverState) -> ResolverState:
        """Apply the user's pick among the duplicate candidates."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        fs = ctx.field_state(field)
        candidates = fs.candidates
        intent = self.interpreter.interpret_duplicate_choice(ctx.last_user_message(), len(candidates))

        if intent.label == IntentLabel.USE and intent.index is not None and intent.index < len(candidates):
            chosen = candidates[intent.index]
            logger.info(f"User chose existing {config.model} {chosen.id} for {field}")
            return self._resolved(state, chosen.fields, f"Using existing {config.entity_name}: {chosen.display_value()}")
        if intent.label == IntentLabel.CREATE:
            logger.info(f"User chose to create a new {config.model} for {field}")
            fs.phase = FieldPhase.IDLE
            fs.candidates = []
            state["search_value"] = fs.identifier or state["search_value"]
            state["route"] = "start_creation"
            return state

        entity = (config.display_name or config.entity_name).lower()
        state["result"] = NeedsUserInput(
            message=(
                "I didn't understand that. Please reply with:\n"
                f"- 'use' or 'yes' to use the existing {entity}\n"
                f"- A number (1-{len(candidates)}) to select a specific one\n"
                f"- 'new' or 'create' to create a new one\n\n"
                + duplicate_prompt(entity, candidates, config.display_fields)
            ),
            metadata={"error": "unclear_choice", "field": field},
        )
        state["route"] = "end"
        return state

    @resolution_error_handler
    def start_creation(self, state: ResolverState) -> ResolverState:
        """Ask before creating, or create straight away when not interactive."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        if not (config.confirm_before_create or config.interactive):
            state["route"] = "create_auto"
            return state

        fs = ctx.field_state(field)
        fs.phase = FieldPhase.AWAITING_CREATE_CONFIRM
        fs.identifier = state["search_value"]
        logger.info(f"{config.model} '{fs.identifier}' not found for {field}, asking to create")
        state["result"] = NeedsUserInput(
            message=f"{config.display_name or config.entity_name} '{fs.identifier}' doesn't exist. Would you like to create it? (yes/no)",
            metadata={"field": field, "identifier": fs.identifier},
        )
        state["route"] = "end"
        return state

    @resolution_error_handler
    def confirm_creation(self, state: ResolverState) -> ResolverState:
        """Read the answer to "would you like to create it?"."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        fs = ctx.field_state(field)
        identifier = fs.identifier or state["search_value"]
        state["search_value"] = identifier
        intent = self.interpreter.interpret_confirmation(ctx.last_user_message(), question=f"Create {config.entity_name} '{identifier}'?")

        if intent.label == IntentLabel.CONFIRM:
            if not identifier:
                ctx.clear_field(field)
                state["result"] = Failure(error="Cannot create entity - identifier is missing", metadata={"field": field})
                state["route"] = "end"
                return state
            logger.info(f"User confirmed creating {config.model} '{identifier}' for {field}")
            state["route"] = "start_subflow" if config.subflow else "create_auto"
            return state

        if intent.label == IntentLabel.DECLINE:
            logger.info(f"User declined creating {config.model} '{identifier}' for {field}")
            raise UserDeclinedError(f"{config.display_name or config.entity_name} creation cancelled", field=field)

        if intent.label == IntentLabel.MODIFY:
            items = self.interpreter.extract_items(ctx.last_user_message(), config)
            name_key = config.identifier_field or "name"
            if items and items[0].get(name_key):
                ctx.clear_field(field)
                state["search_value"] = str(items[0][name_key])
                state["identifier"] = state["search_value"]
                logger.info(f"User changed {field} reference to '{state['search_value']}'")
                state["route"] = "search_duplicates" if config.check_duplicates and config.ask_on_duplicate else "search_exact"
                return state

        state["result"] = NeedsUserInput(
            message=f"Should I create the {config.entity_name.lower()} '{identifier}'? Please answer yes or no.",
            metadata={"error": "unclear_confirmation", "field": field},
        )
        state["route"] = "end"
        return state

    @resolution_error_handler
    def create_auto(self, state: ResolverState) -> ResolverState:
        """Create the entity from the identifier and defaults."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        store = self.stores.require(config.model)
        fs = ctx.field_state(field)
        data = build_entity_fields(store, config, state["search_value"], ctx, extra=fs.extracted_data)
        logger.info(f"Creating {config.model} automatically for {field}: {data}")
        record = store.create(data)
        DataDogService.increment_metric("entity_resolution.created", tags={"field": field, "model": config.model})
        return self._resolved(state, record, f"{config.entity_name} created")

    @resolution_error_handler
    def start_subflow(self, state: ResolverState) -> ResolverState:
        """Hand creation over to the configured subflow."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        fs = ctx.field_state(field)
        fs.phase = FieldPhase.CREATING_VIA_SUBFLOW
        fs.identifier = state["search_value"]
        state["result"] = self.orchestrator.start(ctx, field, config, state["search_value"])
        state["route"] = "end"
        return state

    @resolution_error_handler
    def finish_subflow(self, state: ResolverState) -> ResolverState:
        """Collect the entity created by a finished subflow."""
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        state["search_value"] = ctx.field_state(field).identifier or state["search_value"]
        outcome = self.orchestrator.complete(ctx)
        store = self.stores.require(config.model)
        record = None
        if outcome.entity_id is not None:
            try:
                record = store.get(outcome.entity_id)
            except NotFoundError:
                logger.warning(f"Created {config.model} {outcome.entity_id} not found after subflow")
        if record is None:
            identifier = outcome.collected.get(self._identifier_key(config)) or ctx.field_state(field).identifier
            record = self.search.find_exact(config, identifier) if identifier else None
        if record is None:
            ctx.field_state(field).phase = FieldPhase.AWAITING_CREATE_CONFIRM
            state["result"] = NeedsUserInput(
                message=f"I couldn't find the {config.entity_name.lower()} that was just created. Would you like to try again? (yes/no)",
                metadata={"error": "missing_entity_id", "field": field},
            )
            state["route"] = "end"
            return state

        user_input = {key: outcome.collected[key] for key in config.include_fields if key in outcome.collected}
        DataDogService.increment_metric("entity_resolution.created", tags={"field": field, "model": config.model})
        return self._resolved(state, record, f"{config.entity_name} created", user_input=user_input)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _resolved(self, state: ResolverState, record: Dict[str, Any], message: str,
                  user_input: Optional[Dict[str, Any]] = None) -> ResolverState:
        field, config, ctx = state["field"], state["resolution_config"], state["ctx"]
        entity = project_fields(record, config.include_fields, config.base_fields, user_input=user_input)
        ctx.collected_data[field] = record["id"]
        base = field[:-3] if field.endswith("_id") else field
        for key in config.include_fields:
            if key in entity:
                ctx.collected_data[f"{base}_{key}"] = entity[key]
        ctx.fields[field] = FieldState(
            phase=FieldPhase.DONE,
            identifier=state["search_value"],
            extracted_data=ctx.field_state(field).extracted_data,
        )
        logger.info(f"{field} resolved to {config.model} {record['id']}")
        DataDogService.increment_metric("entity_resolution.resolved", tags={"field": field, "model": config.model})
        state["result"] = Success(message=message, data={field: record["id"], "entity": entity})
        state["route"] = "end"
        return state

    @staticmethod
    def _identifier_key(config: ResolutionConfig) -> str:
        return config.identifier_field or "name"

    @staticmethod
    def _search_value(identifier: Any, config: ResolutionConfig, fs: FieldState) -> str:
        """
        Search value for an identifier; structured identifiers are remembered.

        A dict is searched by the first configured search field it carries,
        else by its first non-empty value, and its values are merged into the
        field's extracted data without dropping earlier ones.
        """
        if isinstance(identifier, dict):
            fs.extracted_data.update({k: v for k, v in identifier.items() if v not in (None, "")})
            for field in config.search_fields:
                if identifier.get(field) not in (None, ""):
                    return str(identifier[field]).strip()
            for value in identifier.values():
                if value not in (None, ""):
                    return str(value).strip()
            return ""
        return str(identifier).strip() if identifier is not None else ""
