"""
Shared pytest fixtures for the entity resolution test suite.

Provides seeded in-memory stores, a fresh session context, resolvers wired
to the heuristic interpreter and a mocked statsd client so that individual
test modules stay focused on behavior, not setup.
"""

import sys
import os
from typing import Any, Dict
from unittest.mock import MagicMock, patch

import pytest

# ---------------------------------------------------------------------------
# Ensure the project root is on sys.path so bare imports work (agents.*, etc.)
# and select the testing profile before utils.config is first imported.
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.abspath(
    os.path.join(os.path.dirname(__file__), "..")
)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
os.environ.setdefault("PROFILE", "testing")

from agents.batch_resolver import BatchEntityResolver
from agents.entity_resolver import EntityResolver
from agents.entity_search import EntitySearch
from agents.intent_interpreter import HeuristicInterpreter
from connectors.registry import EntityStoreRegistry
from engine.executors import WorkflowRegistry
from engine.subflow_orchestrator import SubflowOrchestrator
from models.resolution import ResolutionConfig
from models.workflow_context import WorkflowContext
from workflows.invoice import (
    CreateCustomerWorkflow,
    CreateProductWorkflow,
    InvoiceWorkflow,
    build_engine,
    build_stores,
)


# ── Sample configs ───────────────────────────────────────────────────────────

AUTO_TAG_CONFIG = ResolutionConfig(
    model="tag",
    search_fields=["name"],
    interactive=False,
)


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def mock_statsd() -> MagicMock:
    """Keep DataDog metrics off the network; tests may assert on the calls."""
    with patch("services.datadog_service.statsd") as statsd:
        yield statsd


@pytest.fixture
def stores() -> EntityStoreRegistry:
    """Seeded customer, product and invoice stores (fresh per test)."""
    return build_stores()


@pytest.fixture
def ctx() -> WorkflowContext:
    """Empty session context for user-1 in workspace 1."""
    return WorkflowContext(session_id="test-session", user_id="user-1", workspace_id=1)


@pytest.fixture
def workflows() -> WorkflowRegistry:
    registry = WorkflowRegistry()
    registry.register(InvoiceWorkflow())
    registry.register(CreateCustomerWorkflow())
    registry.register(CreateProductWorkflow())
    return registry


@pytest.fixture
def orchestrator(workflows: WorkflowRegistry) -> SubflowOrchestrator:
    """Orchestrator without a step runner: starting a subflow only moves the cursor."""
    return SubflowOrchestrator(workflows)


@pytest.fixture
def resolver(stores, orchestrator) -> EntityResolver:
    return EntityResolver(stores, EntitySearch(stores), HeuristicInterpreter(), orchestrator)


@pytest.fixture
def batch_resolver(stores, orchestrator) -> BatchEntityResolver:
    return BatchEntityResolver(stores, EntitySearch(stores), HeuristicInterpreter(), orchestrator)


@pytest.fixture
def engine(stores):
    """Invoice engine using the heuristic interpreter."""
    return build_engine(stores, interpreter=HeuristicInterpreter())


@pytest.fixture
def mock_llm_service() -> MagicMock:
    """A mock ``LLMService``; tests set ``invoke``/``complete_json`` replies."""
    return MagicMock()


def in_invoice(ctx: WorkflowContext, step: str = "resolve_customer", **collected: Any) -> WorkflowContext:
    """Place the context on a step of the invoice workflow with some collected data."""
    ctx.current_workflow = "invoice"
    ctx.current_step = step
    ctx.collected_data.update(collected)
    return ctx


def say(ctx: WorkflowContext, text: str) -> WorkflowContext:
    ctx.add_user_message(text)
    return ctx


def store_records(stores: EntityStoreRegistry, model: str) -> Dict[Any, Dict[str, Any]]:
    return {record["id"]: record for record in stores.require(model).records}
