import re
from typing import Any, Callable, Dict, List, Optional

from agents.item_parser import split_item_list
from connectors.entity_store import owner_defaults
from models.resolution import ActionResult, Failure, NeedsUserInput, ResolutionConfig, Success
from models.workflow_context import AWAITING_STEP_KEY, CREATED_ENTITY_KEY, WorkflowContext
from utils.exceptions import ConfigurationError, WorkflowExecutionError
from utils.logger import logger

CANCEL_WORDS = {"cancel", "stop", "abort", "quit"}
SKIP_WORDS = {"skip", "none", "n/a", "-"}


class Step:
    """A named unit of work inside a workflow."""

    def __init__(self, name: str):
        self.name = name

    def execute(self, ctx: WorkflowContext, engine) -> ActionResult:
        """
        Run the step against the context.

        Args:
            ctx (WorkflowContext): Session context
            engine (WorkflowEngine): Engine giving access to resolvers and stores

        Returns:
            ActionResult: Success advances the workflow, NeedsUserInput ends the turn
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class CollectFieldStep(Step):
    """Asks for one value and stores the next user message under a field."""

    def __init__(self, name: str, field: str, prompt: str, required: bool = True,
                 parser: Optional[Callable[[str], Any]] = None):
        super().__init__(name)
        self.field = field
        self.prompt = prompt
        self.required = required
        self.parser = parser

    def execute(self, ctx: WorkflowContext, engine) -> ActionResult:
        if ctx.collected_data.get(self.field) not in (None, ""):
            return Success(message=f"{self.field} already provided", data={self.field: ctx.collected_data[self.field]})

        if ctx.get(AWAITING_STEP_KEY) != ctx.current_step:
            ctx.set(AWAITING_STEP_KEY, ctx.current_step)
            return NeedsUserInput(message=self.prompt, metadata={"field": self.field, "step": self.name})

        answer = ctx.last_user_message().strip()
        if answer.lower() in CANCEL_WORDS:
            ctx.forget(AWAITING_STEP_KEY)
            logger.info(f"Step {ctx.current_step} cancelled by user")
            return Failure(error=f"Stopped collecting {self.field.replace('_', ' ')}", metadata={"reason": "cancelled", "field": self.field})
        if not answer or (not self.required and answer.lower() in SKIP_WORDS):
            if self.required:
                return NeedsUserInput(message=self.prompt, metadata={"field": self.field, "step": self.name})
            ctx.forget(AWAITING_STEP_KEY)
            return Success(message=f"{self.field} skipped")

        value: Any = answer
        if self.parser is not None:
            try:
                value = self.parser(answer)
            except ValueError:
                return NeedsUserInput(
                    message=f"That doesn't look right. {self.prompt}",
                    metadata={"error": "invalid_value", "field": self.field},
                )
        ctx.collected_data[self.field] = value
        ctx.forget(AWAITING_STEP_KEY)
        logger.debug(f"Collected {self.field}={value!r}")
        return Success(message=f"{self.field} collected", data={self.field: value})


class ResolveFieldStep(Step):
    """Resolves a collected reference (or list of references) to stored entities."""

    def __init__(self, name: str, field: str, config: ResolutionConfig, source: Optional[str] = None,
                 retry_step: Optional[str] = None):
        """
        Args:
            name (str): Step name
            field (str): Field receiving the entity id(s), e.g. "customer_id"
            config (ResolutionConfig): How to resolve the field
            source (str, optional): Collected field holding the user's reference. Defaults to field.
            retry_step (str, optional): Step to return to when the user declines creating the entity
        """
        super().__init__(name)
        self.field = field
        self.config = config
        self.source = source or field
        self.retry_step = retry_step

    def execute(self, ctx: WorkflowContext, engine) -> ActionResult:
        cursor = (ctx.current_workflow, ctx.current_step)
        value = ctx.collected_data.get(self.source)

        if self.config.multiple:
            items = split_item_list(value) if isinstance(value, str) else (value or [])
            result = engine.batch_resolver.resolve_batch(self.field, self.config, items, ctx, source_key=self.source)
        else:
            result = engine.resolver.resolve(self.field, self.config, value, ctx)

        if (ctx.current_workflow, ctx.current_step) != cursor:
            return result
        if isinstance(result, Failure) and result.metadata.get("reason") == "declined" and self.retry_step:
            return self._retry(ctx, engine, result)
        return result

    def _retry(self, ctx: WorkflowContext, engine, failure: Failure) -> ActionResult:
        prefix = ctx.step_prefix_for(ctx.current_workflow)
        workflow = engine.workflows.require(ctx.current_workflow)
        retry = workflow.step(self.retry_step)
        if isinstance(retry, CollectFieldStep):
            ctx.collected_data.pop(retry.field, None)
        ctx.current_step = prefix + self.retry_step
        logger.info(f"Returning to step {ctx.current_step} after declined creation")
        prompt = retry.execute(ctx, engine)
        return NeedsUserInput(message=f"{failure.error}. {prompt.user_message}".strip(), metadata=dict(prompt.metadata if isinstance(prompt, NeedsUserInput) else {}))


class CreateEntityStep(Step):
    """Creates a record from collected data and leaves its id in the context."""

    def __init__(self, name: str, model: str, result_field: str = "id", display_field: str = "name"):
        super().__init__(name)
        self.model = model
        self.result_field = result_field
        self.display_field = display_field

    def execute(self, ctx: WorkflowContext, engine) -> ActionResult:
        store = engine.stores.require(self.model)
        writable = store.list_writable_fields()
        data = owner_defaults(writable, ctx.workspace_id, ctx.user_id)
        data.update({key: value for key, value in ctx.collected_data.items() if key in writable})
        record = store.create(data)
        ctx.set(CREATED_ENTITY_KEY, record["id"])
        ctx.collected_data[self.result_field] = record["id"]
        label = self.model.replace("_", " ").capitalize()
        name = record.get(self.display_field)
        logger.info(f"{label} {record['id']} created by step {ctx.current_step}")
        message = f"{label} '{name}' created" if name else f"{label} created"
        return Success(message=message, data={"entity": record})


class Workflow:
    """An ordered list of steps identified by a workflow id."""

    workflow_id: str = ""
    name: str = ""
    identifier_field: str = "name"
    # item key -> subflow field, applied when the workflow runs as a subflow
    passthrough_aliases: Dict[str, str] = {}

    def __init__(self):
        self.steps: List[Step] = self.build_steps()
        if not self.steps:
            raise ConfigurationError(f"Workflow {self.workflow_id} has no steps")
        self._index = {step.name: position for position, step in enumerate(self.steps)}

    def build_steps(self) -> List[Step]:
        raise NotImplementedError

    @classmethod
    def entity_fields(cls) -> List[str]:
        """Fields this workflow collects for the entity it creates."""
        return []

    def first_step(self) -> str:
        return self.steps[0].name

    def step(self, name: str) -> Step:
        if name not in self._index:
            raise WorkflowExecutionError(f"Workflow {self.workflow_id} has no step '{name}'")
        return self.steps[self._index[name]]

    def next_step(self, name: str) -> Optional[str]:
        position = self._index[name] + 1
        return self.steps[position].name if position < len(self.steps) else None

    def completion_message(self, ctx: WorkflowContext) -> str:
        return f"{self.name.replace('_', ' ').capitalize()} completed."


class WorkflowRegistry:
    """Registry of workflows keyed by workflow id."""

    def __init__(self):
        self.workflows: Dict[str, Workflow] = {}
        logger.debug("Initialized WorkflowRegistry")

    def register(self, workflow: Workflow) -> None:
        logger.info(f"Registering workflow: {type(workflow).__name__} (id: {workflow.workflow_id})")
        self.workflows[workflow.workflow_id] = workflow

    def get(self, workflow_id: Optional[str]) -> Optional[Workflow]:
        return self.workflows.get(workflow_id) if workflow_id else None

    def require(self, workflow_id: Optional[str]) -> Workflow:
        workflow = self.get(workflow_id)
        if workflow is None:
            raise ConfigurationError(f"No workflow registered with id '{workflow_id}'")
        return workflow


def slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", str(text).lower()).strip("_")
