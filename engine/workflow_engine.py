from typing import Optional

from agents.batch_resolver import BatchEntityResolver
from agents.duplicate_ranker import AIRankingHook, DuplicateRanker
from agents.entity_resolver import EntityResolver
from agents.entity_search import EntitySearch
from agents.intent_interpreter import IntentInterpreter, build_interpreter
from connectors.registry import EntityStoreRegistry
from engine.executors import Workflow, WorkflowRegistry
from engine.subflow_orchestrator import SubflowOrchestrator
from models.resolution import ActionResult, Failure, NeedsUserInput, Success
from models.workflow_context import AWAITING_STEP_KEY, WorkflowContext
from services.datadog_service import DataDogService
from utils.config import ActiveConfig
from utils.exceptions import WorkflowExecutionError
from utils.logger import logger


class WorkflowEngine:
    """Runs one conversational turn of a workflow, subflows included."""

    def __init__(
        self,
        stores: EntityStoreRegistry,
        workflows: Optional[WorkflowRegistry] = None,
        llm_service=None,
        interpreter: Optional[IntentInterpreter] = None,
        max_steps: Optional[int] = None,
    ):
        """
        Initialize the engine and wire its resolvers.

        Args:
            stores (EntityStoreRegistry): Entity stores keyed by entity type
            workflows (WorkflowRegistry, optional): Registered workflows
            llm_service (LLMService, optional): Completion provider for the AI paths
            interpreter (IntentInterpreter, optional): Overrides the configured interpreter
            max_steps (int, optional): Steps allowed per turn. Defaults to ActiveConfig.MAX_STEPS_PER_TURN.
        """
        self.stores = stores
        self.workflows = workflows or WorkflowRegistry()
        self.max_steps = max_steps or ActiveConfig.MAX_STEPS_PER_TURN
        ai_hook = AIRankingHook(llm_service) if ActiveConfig.USE_AI_RANKING and llm_service is not None else None
        self.search = EntitySearch(stores, DuplicateRanker(ai_hook=ai_hook))
        self.interpreter = interpreter or build_interpreter(llm_service)
        self.orchestrator = SubflowOrchestrator(self.workflows, step_runner=self.execute_current_step)
        self.resolver = EntityResolver(stores, self.search, self.interpreter, self.orchestrator)
        self.batch_resolver = BatchEntityResolver(stores, self.search, self.interpreter, self.orchestrator)
        logger.debug("Initialized WorkflowEngine")

    def register_workflow(self, workflow: Workflow) -> None:
        """
        Register a workflow or subflow.

        Args:
            workflow (Workflow): Workflow instance
        """
        self.workflows.register(workflow)

    def start_workflow(self, ctx: WorkflowContext, workflow_id: str, message: Optional[str] = None) -> ActionResult:
        """
        Start a workflow from its first step, discarding any previous run.

        Args:
            ctx (WorkflowContext): Session context
            workflow_id (str): Registered workflow id
            message (str, optional): Message that started the workflow, kept in the history

        Returns:
            ActionResult: Result of the turn
        """
        workflow = self.workflows.require(workflow_id)

        def begin() -> ActionResult:
            if message:
                ctx.add_user_message(message)
            ctx.collected_data = {}
            ctx.fields = {}
            ctx.workflow_stack = []
            ctx.active_subflow = None
            ctx.forget(AWAITING_STEP_KEY)
            ctx.current_workflow = workflow.workflow_id
            ctx.current_step = workflow.first_step()
            logger.info(f"Starting workflow {workflow_id} for session {ctx.session_id}")
            return self._run(ctx)

        return self._turn(ctx, begin)

    def process_message(self, ctx: WorkflowContext, message: str) -> ActionResult:
        """
        Feed one user message to the active workflow.

        Args:
            ctx (WorkflowContext): Session context
            message (str): User message

        Returns:
            ActionResult: Result of the turn
        """
        if ctx.current_workflow is None or ctx.current_step is None:
            return Failure(error="There is no active workflow. Start one first.", metadata={"error": "no_active_workflow"})

        def step() -> ActionResult:
            ctx.add_user_message(message)
            return self._run(ctx)

        return self._turn(ctx, step)

    def _turn(self, ctx: WorkflowContext, body) -> ActionResult:
        """Run a turn body so that a failing turn leaves the context untouched."""
        try:
            with DataDogService.timed("entity_resolution.turn_duration", tags={"workflow": ctx.current_workflow}), ctx.transaction():
                result = body()
                if result.user_message:
                    ctx.add_assistant_message(result.user_message)
                return result
        except Exception as e:
            logger.error(f"Turn failed for session {ctx.session_id}: {e}", exc_info=True)
            DataDogService.capture_exception(e, tags={"workflow": ctx.current_workflow or "none"})
            return NeedsUserInput(
                message="Something went wrong on my side. Could you say that again?",
                metadata={"error": str(e)},
            )

    def _run(self, ctx: WorkflowContext) -> ActionResult:
        for _ in range(self.max_steps):
            if ctx.current_step is None:
                workflow = self.workflows.require(ctx.current_workflow)
                return Success(message=workflow.completion_message(ctx), data=dict(ctx.collected_data))

            result = self.execute_current_step(ctx)
            if isinstance(result, NeedsUserInput):
                return result
            if isinstance(result, Failure):
                if ctx.active_subflow is not None and ctx.current_workflow == ctx.active_subflow.workflow_id:
                    logger.info(f"Step {ctx.current_step} failed inside subflow: {result.error}")
                    return self.orchestrator.abort(ctx, result.error)
                return result
        raise WorkflowExecutionError(f"Workflow {ctx.current_workflow} exceeded {self.max_steps} steps in one turn")

    def execute_current_step(self, ctx: WorkflowContext) -> ActionResult:
        """
        Execute the step under the cursor and advance the cursor on success.

        A step that moves the cursor itself (entering a subflow) is not
        advanced. A subflow's last step hands the cursor back to the parent
        step so the parent's resolver can pick up the created entity.

        Returns:
            ActionResult: Result of the step
        """
        workflow = self.workflows.require(ctx.current_workflow)
        prefix = ctx.step_prefix_for(workflow.workflow_id)
        step_name = ctx.current_step[len(prefix):] if prefix and ctx.current_step.startswith(prefix) else ctx.current_step
        step = workflow.step(step_name)
        cursor = (ctx.current_workflow, ctx.current_step)
        logger.debug(f"Executing step {ctx.current_step} of {workflow.workflow_id}")

        result = step.execute(ctx, self)
        if (ctx.current_workflow, ctx.current_step) != cursor or not isinstance(result, Success):
            return result

        next_step = workflow.next_step(step_name)
        if next_step is not None:
            ctx.current_step = prefix + next_step
        elif ctx.active_subflow is not None and ctx.active_subflow.workflow_id == workflow.workflow_id:
            frame = ctx.peek_frame()
            ctx.current_workflow = frame.workflow
            ctx.current_step = frame.step
            logger.info(f"Subflow {workflow.workflow_id} finished, returning to {frame.workflow}:{frame.step}")
        else:
            ctx.current_step = None
            logger.info(f"Workflow {workflow.workflow_id} completed for session {ctx.session_id}")
        return result
