"""
Tests for the per-session context (models/workflow_context.py) and the
resolution models it carries (models/resolution.py).
"""

import sys
import os

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from models.resolution import Candidate, Failure, Intent, IntentLabel, NeedsUserInput, ResolutionConfig, Success
from models.workflow_context import ActiveSubflow, FieldPhase, FieldState, StackFrame, WorkflowContext
from utils.config import ActiveConfig
from utils.exceptions import SubflowError


class TestStateBag:

    def test_set_get_forget(self, ctx):
        ctx.set("awaiting_step", "ask_customer")
        assert ctx.get("awaiting_step") == "ask_customer"
        ctx.forget("awaiting_step", "never_set")
        assert ctx.get("awaiting_step") is None
        assert ctx.get("missing", "default") == "default"


class TestConversation:

    def test_last_user_message(self, ctx):
        assert ctx.last_user_message() == ""
        ctx.add_user_message("hello")
        ctx.add_assistant_message("hi")
        assert ctx.last_user_message() == "hello"

    def test_history_is_bounded(self, ctx):
        for i in range(ActiveConfig.MAX_HISTORY_MESSAGES + 5):
            ctx.add_user_message(f"message {i}")
        assert len(ctx.conversation_history) == ActiveConfig.MAX_HISTORY_MESSAGES
        assert ctx.last_user_message() == f"message {ActiveConfig.MAX_HISTORY_MESSAGES + 4}"


class TestFieldState:

    def test_field_state_is_created_on_demand(self, ctx):
        fs = ctx.field_state("customer_id")
        assert fs.phase == FieldPhase.IDLE
        assert not fs.is_pending
        fs.phase = FieldPhase.AWAITING_CREATE_CONFIRM
        assert ctx.field_state("customer_id").is_pending

    def test_clear_field_resets_to_idle(self, ctx):
        ctx.field_state("customer_id").phase = FieldPhase.AWAITING_DUPLICATE_CHOICE
        ctx.clear_field("customer_id")
        assert ctx.field_state("customer_id").phase == FieldPhase.IDLE

    def test_fields_are_independent(self, ctx):
        ctx.field_state("customer_id").phase = FieldPhase.DONE
        assert ctx.field_state("vendor_id").phase == FieldPhase.IDLE


class TestWorkflowStack:

    def _subflow(self, prefix="product_invoice_"):
        return ActiveSubflow(workflow_id="create_product", parent_field_name="items",
                             entity_name="Product", step_prefix=prefix)

    def test_push_pop_is_lifo(self, ctx):
        ctx.push_frame(StackFrame(workflow="invoice", step="one"))
        ctx.push_frame(StackFrame(workflow="create_product", step="two"))
        assert ctx.peek_frame().step == "two"
        assert ctx.pop_frame().step == "two"
        assert ctx.pop_frame().step == "one"
        assert ctx.peek_frame() is None

    def test_pop_on_empty_stack_raises(self, ctx):
        with pytest.raises(SubflowError):
            ctx.pop_frame()

    def test_stack_depth_is_bounded(self, ctx):
        for i in range(ActiveConfig.MAX_SUBFLOW_DEPTH):
            ctx.push_frame(StackFrame(workflow="invoice", step=str(i)))
        with pytest.raises(SubflowError):
            ctx.push_frame(StackFrame(workflow="invoice", step="overflow"))
        assert len(ctx.workflow_stack) == ActiveConfig.MAX_SUBFLOW_DEPTH

    def test_subflow_completed_follows_step_prefix(self, ctx):
        assert not ctx.subflow_completed()
        ctx.active_subflow = self._subflow()
        ctx.current_step = "product_invoice_sale_price"
        assert not ctx.subflow_completed()
        ctx.current_step = "resolve_items"
        assert ctx.subflow_completed()

    def test_step_prefix_for_active_and_suspended_workflows(self, ctx):
        outer = self._subflow()
        ctx.push_frame(StackFrame(workflow="create_product", step="product_invoice_category", active_subflow=outer))
        ctx.active_subflow = ActiveSubflow(workflow_id="create_category", parent_field_name="category_id",
                                           entity_name="Category", step_prefix="category_create_product_")
        assert ctx.step_prefix_for("create_category") == "category_create_product_"
        assert ctx.step_prefix_for("create_product") == "product_invoice_"
        assert ctx.step_prefix_for("invoice") == ""

    def test_parent_collected_data(self, ctx):
        assert ctx.parent_collected_data == {}
        ctx.push_frame(StackFrame(workflow="invoice", step="resolve_items", collected_data={"customer_id": 1}))
        assert ctx.parent_collected_data == {"customer_id": 1}


class TestTransaction:

    def test_transaction_rolls_back_on_error(self, ctx):
        ctx.collected_data["customer_id"] = 1
        with pytest.raises(RuntimeError):
            with ctx.transaction():
                ctx.collected_data["customer_id"] = 2
                ctx.field_state("items").phase = FieldPhase.AWAITING_CREATE_CONFIRM
                ctx.push_frame(StackFrame(workflow="invoice"))
                raise RuntimeError("boom")
        assert ctx.collected_data == {"customer_id": 1}
        assert "items" not in ctx.fields
        assert ctx.workflow_stack == []

    def test_transaction_keeps_changes_on_success(self, ctx):
        with ctx.transaction():
            ctx.collected_data["customer_id"] = 2
        assert ctx.collected_data["customer_id"] == 2

    def test_restore_does_not_share_state_with_snapshot(self, ctx):
        snapshot = ctx.snapshot()
        ctx.restore(snapshot)
        ctx.collected_data["x"] = 1
        assert snapshot.collected_data == {}


class TestSerialization:

    def test_context_survives_json_round_trip(self, ctx):
        ctx.current_workflow = "invoice"
        ctx.current_step = "resolve_customer"
        fs = ctx.field_state("customer_id")
        fs.phase = FieldPhase.AWAITING_DUPLICATE_CHOICE
        fs.candidates = [Candidate(id=1, fields={"id": 1, "name": "John Smith"}, similarity_score=85, matched_field="name")]
        ctx.add_user_message("John")

        loaded = WorkflowContext.model_validate_json(ctx.model_dump_json())

        assert loaded.field_state("customer_id").phase == FieldPhase.AWAITING_DUPLICATE_CHOICE
        assert loaded.field_state("customer_id").candidates[0].display_value() == "John Smith"
        assert loaded.last_user_message() == "John"


class TestResolutionModels:

    def test_entity_name_is_title_cased(self):
        assert ResolutionConfig(model="sales_order").entity_name == "Sales Order"

    def test_config_is_frozen(self):
        config = ResolutionConfig(model="customer")
        with pytest.raises(Exception):
            config.model = "vendor"

    def test_candidate_score_bounds(self):
        with pytest.raises(Exception):
            Candidate(id=1, similarity_score=101)

    def test_action_results(self):
        assert Success(message="done").is_terminal
        assert Failure(error="nope").user_message == "nope"
        needs = NeedsUserInput(message="Which one?", metadata={"field": "customer_id"})
        assert not needs.is_terminal
        assert needs.user_message == "Which one?"

    def test_intent_unclear(self):
        assert Intent.unclear().is_unclear
        assert not Intent(label=IntentLabel.USE, index=0).is_unclear

    def test_field_state_defaults(self):
        fs = FieldState()
        assert fs.validated == [] and fs.missing == [] and fs.creation_index == 0
