from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from models.resolution import ActionResult, Failure, NeedsUserInput, Success
from services.datadog_service import DataDogService
from services.session_store import build_session_store
from utils.config import ActiveConfig
from utils.exceptions import ConfigurationError
from utils.logger import logger
from workflows.invoice import build_engine

load_dotenv()

session_store = build_session_store()
engine = build_engine()


class StartWorkflowRequest(BaseModel):
    """Request schema for starting a workflow in a session."""
    workflow_id: str
    message: Optional[str] = None
    user_id: Optional[str] = None
    workspace_id: Optional[Any] = None


class MessageRequest(BaseModel):
    """Request schema for one user message."""
    message: str


class TurnResponse(BaseModel):
    """Response schema for one conversational turn."""
    session_id: str
    status: str
    message: str
    data: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    current_workflow: Optional[str] = None
    current_step: Optional[str] = None


def _response(session_id: str, result: ActionResult, ctx) -> TurnResponse:
    response = TurnResponse(
        session_id=session_id,
        status=result.status,
        message=result.user_message,
        current_workflow=ctx.current_workflow,
        current_step=ctx.current_step,
    )
    if isinstance(result, Success):
        response.data = result.data
    elif isinstance(result, NeedsUserInput):
        response.metadata = result.metadata
    elif isinstance(result, Failure):
        response.error = result.error
        response.metadata = result.metadata
    return response


def _run_turn(session_id: str, turn) -> TurnResponse:
    """Load the session, run one engine turn and save it, holding the session lock."""
    with session_store.lock(session_id):
        ctx = session_store.load(session_id)
        result = turn(ctx)
        session_store.save(ctx)
        return _response(session_id, result, ctx)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for managing startup and shutdown events."""
    try:
        DataDogService.init()
    except ValueError as e:
        logger.warning(f"DataDog metrics disabled: {e}")
    logger.info(f"Application started with {ActiveConfig.SESSION_STORE} session store")

    yield

    logger.info("Application shutting down")


app = FastAPI(title="Entity Resolution API", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/v1/sessions/{session_id}/workflows", response_model=TurnResponse)
async def start_workflow(session_id: str, request: StartWorkflowRequest):
    """Start (or restart) a workflow for a session and return its first prompt."""
    if engine.workflows.get(request.workflow_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown workflow: {request.workflow_id}")

    def turn(ctx):
        if request.user_id is not None:
            ctx.user_id = request.user_id
        if request.workspace_id is not None:
            ctx.workspace_id = request.workspace_id
        return engine.start_workflow(ctx, request.workflow_id, request.message)

    try:
        logger.info(f"Starting workflow {request.workflow_id} for session_id: {session_id}")
        return await run_in_threadpool(_run_turn, session_id, turn)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except Exception as e:
        logger.error(f"Unexpected error in start_workflow: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Server error: {str(e)}")


@app.post("/api/v1/sessions/{session_id}/messages", response_model=TurnResponse)
async def process_message(session_id: str, request: MessageRequest):
    """Feed one user message to the session's active workflow."""
    try:
        logger.info(f"Processing message for session_id: {session_id}, message: {request.message}")
        return await run_in_threadpool(_run_turn, session_id, lambda ctx: engine.process_message(ctx, request.message))
    except Exception as e:
        logger.error(f"Unexpected error in process_message: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Server error: {str(e)}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
