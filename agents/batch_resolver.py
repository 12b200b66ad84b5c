import traceback
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple

from agents.entity_resolver import build_entity_fields
from agents.entity_search import EntitySearch, project_fields
from agents.intent_interpreter import IntentInterpreter, build_interpreter
from agents.item_parser import extract_entity_name, normalize_item
from connectors.registry import EntityStoreRegistry
from engine.executors import WorkflowRegistry
from engine.subflow_orchestrator import SubflowOrchestrator
from models.resolution import ActionResult, Failure, IntentLabel, NeedsUserInput, ResolutionConfig, Success
from models.workflow_context import FieldPhase, FieldState, WorkflowContext
from services.datadog_service import DataDogService
from utils.exceptions import ConfigurationError, NotFoundError, UserDeclinedError
from utils.logger import logger


def batch_error_handler(func: Callable[..., ActionResult]) -> Callable[..., ActionResult]:
    """Roll the context back and turn unexpected failures into a retry prompt; a decline clears the field."""
    @wraps(func)
    def wrapper(self: "BatchEntityResolver", field: str, config: ResolutionConfig, items: Any,
                ctx: WorkflowContext, *args, **kwargs) -> ActionResult:
        snapshot = ctx.snapshot()
        try:
            return func(self, field, config, items, ctx, *args, **kwargs)
        except UserDeclinedError as e:
            ctx.clear_field(field)
            DataDogService.increment_metric("entity_resolution.declined", tags={"field": field, "model": config.model})
            return Failure(error=e.message, metadata={"reason": "declined", "field": field})
        except ConfigurationError as e:
            ctx.restore(snapshot)
            return Failure(error=e.message, metadata={"error": "configuration", "field": field})
        except Exception as e:
            ctx.restore(snapshot)
            error_details = {"message": str(e), "traceback": traceback.format_exc(), "function": func.__name__}
            logger.error(f"Error in {func.__name__}: {error_details}", extra={"function": func.__name__})
            DataDogService.capture_exception(e, tags={"field": field, "model": config.model})
            return NeedsUserInput(
                message=f"Something went wrong while resolving the {self.orchestrator.friendly_name(field, config)}. Would you like to try again?",
                metadata={"error": str(e), "field": field},
            )
    return wrapper


class BatchEntityResolver:
    """
    Resolves an ordered list of entity references, such as invoice line items.

    Every item ends up either validated (matched to a stored entity) or
    missing. Missing items are created after one confirmation, one subflow
    per item when the field configures a subflow.
    """

    def __init__(
        self,
        stores: EntityStoreRegistry,
        search: Optional[EntitySearch] = None,
        interpreter: Optional[IntentInterpreter] = None,
        orchestrator: Optional[SubflowOrchestrator] = None,
    ):
        self.stores = stores
        self.search = search or EntitySearch(stores)
        self.interpreter = interpreter or build_interpreter()
        self.orchestrator = orchestrator or SubflowOrchestrator(WorkflowRegistry())
        logger.debug("Initialized BatchEntityResolver")

    @batch_error_handler
    def resolve_batch(self, field: str, config: ResolutionConfig, items: Any, ctx: WorkflowContext,
                      source_key: Optional[str] = None) -> ActionResult:
        """
        Resolve a list of entity references for a field.

        Args:
            field (str): Field receiving the resolved list, e.g. "items"
            config (ResolutionConfig): How each item is resolved
            items (list): Strings ("2 laptops") or dicts
            ctx (WorkflowContext): Session context, mutated in place
            source_key (str, optional): Collected key that held the raw list; removed once resolved

        Returns:
            ActionResult: Success with the resolved list, Failure, or NeedsUserInput
        """
        self.stores.require(config.model)
        fs = ctx.field_state(field)

        if ctx.active_subflow is not None and ctx.active_subflow.parent_field_name == field:
            if ctx.subflow_completed():
                return self._continue_after_subflow(field, config, ctx, source_key)
            return NeedsUserInput(
                message=f"We're still creating the {config.entity_name.lower()} '{self._item_name(fs.current_item, config)}'.",
                metadata={"field": field, "step": ctx.current_step},
            )

        if fs.phase == FieldPhase.AWAITING_CREATE_CONFIRM:
            return self._handle_confirmation(field, config, ctx, source_key)
        if fs.phase == FieldPhase.DONE and isinstance(ctx.collected_data.get(field), list):
            return Success(message=f"All {self.orchestrator.friendly_name(field, config)} resolved", data={field: ctx.collected_data[field]})
        if fs.phase != FieldPhase.IDLE:
            logger.warning(f"Resetting stale {fs.phase.value} state for {field}")
            ctx.clear_field(field)
        return self._validate(field, config, items, ctx, source_key)

    # ── Validation ───────────────────────────────────────────────────────

    def _validate(self, field: str, config: ResolutionConfig, items: Any, ctx: WorkflowContext,
                  source_key: Optional[str]) -> ActionResult:
        if isinstance(items, (str, dict)):
            items = [items]
        name_key = config.identifier_field or "name"
        normalized = [normalize_item(raw, name_key, config.quantity_field, config.search_fields) for raw in items or []]
        if not normalized:
            return NeedsUserInput(
                message=f"Which {self.orchestrator.friendly_name(field, config)} should I add?",
                metadata={"error": "no_items", "field": field},
            )

        validated: List[Dict[str, Any]] = []
        missing: List[Dict[str, Any]] = []
        for item in normalized:
            identifier, _ = self.item_identifier(item, config)
            record = self.search.find_exact(config, identifier) if identifier else None
            if record:
                validated.append(project_fields(record, config.include_fields, config.base_fields, user_input=item))
            else:
                missing.append(item)
        logger.info(f"{field}: {len(validated)} item(s) found, {len(missing)} missing")

        if not missing:
            return self._finalize(field, config, ctx, validated, source_key)

        fs = ctx.field_state(field)
        fs.validated = validated
        fs.missing = missing
        fs.creation_index = 0
        if config.interactive or config.confirm_before_create:
            fs.phase = FieldPhase.AWAITING_CREATE_CONFIRM
            return self._ask_create(field, config, missing)
        return self._create_missing_auto(field, config, ctx, source_key)

    def item_identifier(self, item: Dict[str, Any], config: ResolutionConfig) -> Tuple[str, Optional[str]]:
        """
        Identifier of an item and the field it came from.

        The configured identifier field wins, then the first search field
        present on the item, then a name extracted from the item's values.
        """
        if config.identifier_field and item.get(config.identifier_field) not in (None, ""):
            return str(item[config.identifier_field]).strip(), config.identifier_field
        for search_field in config.search_fields:
            if item.get(search_field) not in (None, ""):
                return str(item[search_field]).strip(), search_field
        name = extract_entity_name(item, config.entity_name)
        return ("", None) if name.startswith("Unknown") else (name, None)

    def _item_name(self, item: Optional[Dict[str, Any]], config: ResolutionConfig) -> str:
        return extract_entity_name(item or {}, config.entity_name, name_keys=self._name_keys(config))

    @staticmethod
    def _name_keys(config: ResolutionConfig) -> Tuple[str, ...]:
        keys = ("name", "title", "label", "identifier")
        return (config.identifier_field,) + keys if config.identifier_field else keys

    # ── Interactive creation ─────────────────────────────────────────────

    def _ask_create(self, field: str, config: ResolutionConfig, missing: List[Dict[str, Any]]) -> NeedsUserInput:
        seen = {}
        for item in missing:
            name = self._item_name(item, config)
            key = name.lower()
            if key in seen:
                seen[key]["quantity"] += self._quantity(item, config)
            else:
                seen[key] = {"name": name, "quantity": self._quantity(item, config)}

        friendly = self.orchestrator.friendly_name(field, config)
        message = f"The following {friendly} don't exist:\n\n"
        for entry in seen.values():
            message += f"• {entry['name']}"
            if entry["quantity"]:
                message += f" (qty: {entry['quantity']})"
            message += "\n"
        message += "\nWould you like to create them? (yes/no)"
        logger.info(f"Asking to create {len(seen)} missing {friendly}")
        return NeedsUserInput(message=message, metadata={"field": field, "missing": [e["name"] for e in seen.values()]})

    def _handle_confirmation(self, field: str, config: ResolutionConfig, ctx: WorkflowContext,
                             source_key: Optional[str]) -> ActionResult:
        fs = ctx.field_state(field)
        friendly = self.orchestrator.friendly_name(field, config)
        text = ctx.last_user_message()
        intent = self.interpreter.interpret_confirmation(text, question=f"Create the missing {friendly}?")

        if intent.label == IntentLabel.MODIFY:
            new_items = self.interpreter.extract_items(text, config)
            if new_items:
                logger.info(f"{field}: replacing item list with {len(new_items)} new item(s)")
                ctx.clear_field(field)
                if source_key:
                    ctx.collected_data[source_key] = new_items
                return self._validate(field, config, new_items, ctx, source_key)
        elif intent.label == IntentLabel.DECLINE:
            logger.info(f"User declined creating missing {friendly}")
            raise UserDeclinedError(f"{friendly.capitalize()} creation cancelled", field=field)
        elif intent.label == IntentLabel.CONFIRM:
            logger.info(f"User confirmed creating {len(fs.missing)} missing {friendly}")
            return self._create_next(field, config, ctx, source_key)

        reprompt = self._ask_create(field, config, fs.missing)
        return NeedsUserInput(
            message="Please answer yes or no, or tell me what to change.\n\n" + reprompt.message,
            metadata=dict(reprompt.metadata, error="unclear_confirmation"),
        )

    def _create_next(self, field: str, config: ResolutionConfig, ctx: WorkflowContext,
                     source_key: Optional[str]) -> ActionResult:
        """Resolve the next missing item: reuse a record created meanwhile, run a subflow or create it."""
        fs = ctx.field_state(field)
        store = self.stores.require(config.model)
        while fs.missing:
            item = fs.missing[0]
            identifier, _ = self.item_identifier(item, config)
            identifier = identifier or self._item_name(item, config)

            record = self.search.find_exact(config, identifier)
            if record is None and config.subflow:
                fs.phase = FieldPhase.CREATING_VIA_SUBFLOW
                fs.current_item = item
                logger.info(f"{field}: creating item {fs.creation_index + 1} '{identifier}' via subflow {config.subflow}")
                return self.orchestrator.start(ctx, field, config, identifier, item=item, is_batch=True)
            if record is None:
                record = store.create(build_entity_fields(store, config, identifier, ctx, extra=item))
                DataDogService.increment_metric("entity_resolution.created", tags={"field": field, "model": config.model})
            self._mark_resolved(fs, config, record, item)

        return self._finalize(field, config, ctx, fs.validated, source_key)

    def _continue_after_subflow(self, field: str, config: ResolutionConfig, ctx: WorkflowContext,
                                source_key: Optional[str]) -> ActionResult:
        outcome = self.orchestrator.complete(ctx)
        fs = ctx.field_state(field)
        item = fs.current_item or (fs.missing[0] if fs.missing else {})
        store = self.stores.require(config.model)

        record = None
        if outcome.entity_id is not None:
            try:
                record = store.get(outcome.entity_id)
            except NotFoundError:
                logger.warning(f"Created {config.model} {outcome.entity_id} not found after subflow")
        if record is None:
            identifier, _ = self.item_identifier(item, config)
            record = self.search.find_exact(config, identifier) if identifier else None
        if record is None:
            fs.phase = FieldPhase.AWAITING_CREATE_CONFIRM
            return NeedsUserInput(
                message=f"I couldn't find the {config.entity_name.lower()} '{self._item_name(item, config)}' that was just created. Would you like to try again? (yes/no)",
                metadata={"error": "missing_entity_id", "field": field},
            )

        merged = dict(item)
        for key in list(config.required_item_fields) + list(config.include_fields):
            if key in outcome.collected and merged.get(key) in (None, ""):
                merged[key] = outcome.collected[key]
        DataDogService.increment_metric("entity_resolution.created", tags={"field": field, "model": config.model})
        self._mark_resolved(fs, config, record, merged)
        return self._create_next(field, config, ctx, source_key)

    def _mark_resolved(self, fs: FieldState, config: ResolutionConfig, record: Dict[str, Any], item: Dict[str, Any]) -> None:
        fs.validated.append(project_fields(record, config.include_fields, config.base_fields, user_input=item))
        fs.missing.pop(0)
        fs.creation_index += 1
        fs.current_item = None

    # ── Automatic creation and completion ────────────────────────────────

    def _create_missing_auto(self, field: str, config: ResolutionConfig, ctx: WorkflowContext,
                             source_key: Optional[str]) -> ActionResult:
        fs = ctx.field_state(field)
        store = self.stores.require(config.model)
        while fs.missing:
            item = fs.missing[0]
            name = self._item_name(item, config)
            record = self.search.find_exact(config, name) or store.create(build_entity_fields(store, config, name, ctx, extra=item))
            self._mark_resolved(fs, config, record, item)
        logger.info(f"{field}: created {fs.creation_index} {config.model} record(s) automatically")
        DataDogService.increment_metric("entity_resolution.created", tags={"field": field, "model": config.model})
        return self._finalize(field, config, ctx, fs.validated, source_key)

    def _finalize(self, field: str, config: ResolutionConfig, ctx: WorkflowContext, validated: List[Dict[str, Any]],
                  source_key: Optional[str]) -> Success:
        resolved = list(validated)
        ctx.collected_data[field] = resolved
        if source_key and source_key != field:
            ctx.collected_data.pop(source_key, None)
        ctx.fields[field] = FieldState(phase=FieldPhase.DONE)
        friendly = self.orchestrator.friendly_name(field, config)
        logger.info(f"{field}: all {len(resolved)} {friendly} resolved")
        DataDogService.increment_metric("entity_resolution.resolved", tags={"field": field, "model": config.model})
        return Success(message=f"All {friendly} resolved", data={field: resolved})

    @staticmethod
    def _quantity(item: Dict[str, Any], config: ResolutionConfig) -> int:
        try:
            return int(item.get(config.quantity_field) or 0)
        except (TypeError, ValueError):
            return 0
