from copy import deepcopy
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from engine.executors import WorkflowRegistry, slug
from models.resolution import ActionResult, NeedsUserInput, ResolutionConfig
from models.workflow_context import (
    AWAITING_STEP_KEY,
    CREATED_ENTITY_KEY,
    ActiveSubflow,
    FieldPhase,
    StackFrame,
    WorkflowContext,
)
from services.datadog_service import DataDogService
from utils.exceptions import SubflowError
from utils.logger import logger
from utils.naming import FriendlyNameCache


class SubflowOutcome(BaseModel):
    """What a finished subflow hands back to the field that started it."""

    field: str
    entity_name: str
    entity_id: Optional[Any] = None
    collected: Dict[str, Any] = Field(default_factory=dict)


class SubflowOrchestrator:
    """
    Runs nested creation workflows on behalf of a resolving field.

    Starting a subflow pushes the parent's cursor and collected data onto the
    context's workflow stack and hands the subflow a fresh collected-data
    dict. The subflow is complete once the step cursor no longer carries its
    step prefix; completing pops the frame and restores the parent's data.
    """

    def __init__(self, workflows: WorkflowRegistry, step_runner: Optional[Callable[[WorkflowContext], ActionResult]] = None,
                 friendly_names: Optional[FriendlyNameCache] = None):
        """
        Initialize the orchestrator.

        Args:
            workflows (WorkflowRegistry): Registered workflows, subflows included
            step_runner (callable, optional): Executes the step under the cursor; when
                omitted, starting a subflow only positions the cursor
            friendly_names (FriendlyNameCache, optional): Name lookup owned by this orchestrator
        """
        self.workflows = workflows
        self.step_runner = step_runner
        self.friendly_names = friendly_names or FriendlyNameCache()
        logger.debug("Initialized SubflowOrchestrator")

    @staticmethod
    def step_prefix(entity_name: str, parent_workflow_name: str) -> str:
        """Prefix for subflow step names, e.g. "product_invoice_"."""
        return f"{slug(f'{entity_name}_{parent_workflow_name}')}_"

    def friendly_name(self, field: str, config: Optional[ResolutionConfig] = None) -> str:
        explicit = (config.friendly_name or config.display_name) if config else None
        return self.friendly_names.get(field, explicit)

    def start(self, ctx: WorkflowContext, field: str, config: ResolutionConfig, identifier: str,
              item: Optional[Dict[str, Any]] = None, is_batch: bool = False) -> ActionResult:
        """
        Enter the subflow configured for a field and run its first step.

        Args:
            ctx (WorkflowContext): Session context
            field (str): Parent field being resolved
            config (ResolutionConfig): Parent field configuration; config.subflow names the workflow
            identifier (str): Value stored under the subflow's identifier field
            item (dict, optional): Batch item whose pass-through fields seed the subflow
            is_batch (bool): Clear stale entity fields left by a previous item

        Returns:
            ActionResult: Result of the subflow's first step
        """
        subflow = self.workflows.require(config.subflow)
        parent = self.workflows.get(ctx.current_workflow)
        prefix = self.step_prefix(config.entity_name, parent.name if parent else "workflow")
        entity_fields = subflow.entity_fields()

        parent_data = deepcopy(ctx.collected_data)
        if is_batch:
            for key in entity_fields:
                ctx.forget(key)
                parent_data.pop(key, None)

        frame = StackFrame(
            workflow=ctx.current_workflow,
            step=ctx.current_step,
            active_subflow=ctx.active_subflow,
            collected_data=parent_data,
        )
        try:
            ctx.push_frame(frame)
        except SubflowError as e:
            DataDogService.capture_exception(e, tags={"field": field, "model": config.model})
            return NeedsUserInput(
                message=f"I can't start creating the {config.entity_name.lower()} '{identifier}' from here.",
                metadata={"error": "subflow_depth", "field": field},
            )

        fresh: Dict[str, Any] = {subflow.identifier_field: identifier}
        extracted = ctx.field_state(field).extracted_data
        for key, value in extracted.items():
            if value not in (None, "") and key not in fresh:
                fresh[key] = value
        for key, value in (item or {}).items():
            if value in (None, ""):
                continue
            target = subflow.passthrough_aliases.get(key)
            if target is None and (key in entity_fields or key == config.quantity_field):
                target = key
            if target and target not in fresh:
                fresh[target] = value

        ctx.collected_data = fresh
        ctx.active_subflow = ActiveSubflow(
            workflow_id=subflow.workflow_id,
            parent_field_name=field,
            entity_name=config.entity_name,
            step_prefix=prefix,
        )
        ctx.current_workflow = subflow.workflow_id
        ctx.current_step = prefix + subflow.first_step()
        ctx.forget(AWAITING_STEP_KEY, CREATED_ENTITY_KEY)
        logger.info(f"Started subflow {subflow.workflow_id} for {field} '{identifier}' at step {ctx.current_step}")
        DataDogService.increment_metric("entity_resolution.subflow_started", tags={"field": field, "model": config.model})

        if self.step_runner is None:
            return NeedsUserInput(
                message=f"Let's create the {config.entity_name.lower()} '{identifier}'.",
                metadata={"subflow": subflow.workflow_id, "step": ctx.current_step, "field": field},
            )
        try:
            return self.step_runner(ctx)
        except Exception as e:
            logger.error(f"Subflow {subflow.workflow_id} failed on its first step: {e}", exc_info=True)
            DataDogService.capture_exception(e, tags={"field": field, "model": config.model})
            return self.abort(ctx, f"Something went wrong while creating the {config.entity_name.lower()}")

    def complete(self, ctx: WorkflowContext) -> SubflowOutcome:
        """
        Leave a finished subflow and restore the parent.

        Returns:
            SubflowOutcome: Created entity id and the values the subflow collected,
            keyed by the parent's item field names

        Raises:
            SubflowError: If no subflow is active
        """
        active = ctx.active_subflow
        if active is None:
            raise SubflowError("No active subflow to complete")

        subflow_data = dict(ctx.collected_data)
        entity_id = ctx.get(CREATED_ENTITY_KEY, subflow_data.get("id"))
        ctx.forget(CREATED_ENTITY_KEY, AWAITING_STEP_KEY)

        frame = ctx.pop_frame()
        ctx.collected_data = frame.collected_data
        ctx.active_subflow = frame.active_subflow
        ctx.current_workflow = frame.workflow
        ctx.current_step = frame.step

        subflow = self.workflows.get(active.workflow_id)
        reverse = {target: key for key, target in (subflow.passthrough_aliases if subflow else {}).items()}
        collected = {reverse.get(key, key): value for key, value in subflow_data.items()}

        if entity_id is None:
            logger.warning(f"Subflow {active.workflow_id} finished without a created entity id")
        logger.info(f"Completed subflow {active.workflow_id} for {active.parent_field_name}: entity {entity_id}")
        DataDogService.increment_metric("entity_resolution.subflow_completed", tags={"field": active.parent_field_name})
        return SubflowOutcome(
            field=active.parent_field_name,
            entity_name=active.entity_name,
            entity_id=entity_id,
            collected=collected,
        )

    def abort(self, ctx: WorkflowContext, reason: str) -> NeedsUserInput:
        """
        Abandon the active subflow and ask whether to try creating the entity again.

        The parent's cursor and data are restored and the parent field goes
        back to waiting for a create confirmation.
        """
        active = ctx.active_subflow
        if active is None:
            return NeedsUserInput(message=f"{reason}. Would you like to try again?", metadata={"error": "no_active_subflow"})

        identifier = ctx.collected_data.get(self._identifier_field(active.workflow_id))
        ctx.forget(CREATED_ENTITY_KEY, AWAITING_STEP_KEY)
        frame = ctx.pop_frame()
        ctx.collected_data = frame.collected_data
        ctx.active_subflow = frame.active_subflow
        ctx.current_workflow = frame.workflow
        ctx.current_step = frame.step

        state = ctx.field_state(active.parent_field_name)
        state.phase = FieldPhase.AWAITING_CREATE_CONFIRM
        identifier = identifier or state.identifier or ""
        logger.info(f"Aborted subflow {active.workflow_id} for {active.parent_field_name}: {reason}")
        entity = active.entity_name.lower()
        target = f"the {entity} '{identifier}'" if identifier else f"the {entity}"
        return NeedsUserInput(
            message=f"{reason}. Would you like to try creating {target} again? (yes/no)",
            metadata={"error": "subflow_aborted", "field": active.parent_field_name},
        )

    def _identifier_field(self, workflow_id: str) -> str:
        subflow = self.workflows.get(workflow_id)
        return subflow.identifier_field if subflow else "name"
