"""
Tests for list resolution (agents/batch_resolver.py): validation into
found/missing items, the create confirmation, list replacement on
modification and one creation subflow per missing item.
"""

import sys
import os
from unittest.mock import MagicMock

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tests.conftest import in_invoice, say, store_records
from models.resolution import Failure, NeedsUserInput, Success
from models.workflow_context import CREATED_ENTITY_KEY, FieldPhase
from workflows.invoice import PRODUCT_CONFIG

FIELD = "items"
SOURCE = "items_text"
AUTO_CONFIG = PRODUCT_CONFIG.model_copy(update={"interactive": False, "subflow": None})


def _resolve(batch_resolver, ctx, items, config=PRODUCT_CONFIG):
    return batch_resolver.resolve_batch(FIELD, config, items, ctx, source_key=SOURCE)


def _finish_subflow(stores, ctx, **fields):
    """Do what the create_product steps would do and hand the cursor back."""
    record = stores.require("product").create(fields)
    ctx.set(CREATED_ENTITY_KEY, record["id"])
    ctx.current_workflow, ctx.current_step = "invoice", "resolve_items"
    return record


class TestValidation:

    def test_all_items_found(self, batch_resolver, ctx):
        ctx.collected_data[SOURCE] = "1 mouse, 2 keyboard"

        result = _resolve(batch_resolver, ctx, ["1 mouse", "2 keyboard"])

        assert isinstance(result, Success)
        assert result.message == "All products resolved"
        assert ctx.collected_data[FIELD] == [
            {"id": 2, "name": "Mouse", "sale_price": 25, "sku": "MSE-001", "quantity": 1},
            {"id": 3, "name": "Keyboard", "sale_price": 75, "sku": "KBD-001", "quantity": 2},
        ]
        assert SOURCE not in ctx.collected_data
        assert ctx.field_state(FIELD).phase == FieldPhase.DONE

    def test_found_and_missing_partition_the_items(self, batch_resolver, ctx):
        items = ["1 mouse", "2 laptops at $1500", "MSE-001"]

        result = _resolve(batch_resolver, ctx, items)

        fs = ctx.field_state(FIELD)
        assert isinstance(result, NeedsUserInput)
        assert len(fs.validated) + len(fs.missing) == len(items)
        assert [item["id"] for item in fs.validated] == [2, 2]
        assert fs.missing == [{"name": "Laptops", "quantity": 2, "price": 1500}]
        assert fs.phase == FieldPhase.AWAITING_CREATE_CONFIRM
        assert result.message == (
            "The following products don't exist:\n\n"
            "• Laptops (qty: 2)\n"
            "\nWould you like to create them? (yes/no)"
        )

    def test_missing_items_are_deduplicated_in_prompt(self, batch_resolver, ctx):
        result = _resolve(batch_resolver, ctx, ["2 cables", "1 cables", "a monitor"])

        assert "• Cables (qty: 3)" in result.message
        assert "• Monitor (qty: 1)" in result.message
        assert result.metadata["missing"] == ["Cables", "Monitor"]

    def test_dict_items_keep_user_values(self, batch_resolver, ctx):
        result = _resolve(batch_resolver, ctx, [{"name": "Mouse", "sale_price": 20}])

        assert result.data[FIELD] == [{"id": 2, "name": "Mouse", "sale_price": 20, "sku": "MSE-001", "quantity": 1}]

    def test_empty_list_asks_for_items(self, batch_resolver, ctx):
        result = _resolve(batch_resolver, ctx, [])

        assert isinstance(result, NeedsUserInput)
        assert result.metadata["error"] == "no_items"

    def test_item_identifier_prefers_identifier_field(self, batch_resolver):
        assert batch_resolver.item_identifier({"name": "Mouse", "sku": "X-1"}, PRODUCT_CONFIG) == ("Mouse", "name")
        assert batch_resolver.item_identifier({"sku": "X-1"}, PRODUCT_CONFIG) == ("X-1", "sku")
        assert batch_resolver.item_identifier({"product": "Mouse"}, PRODUCT_CONFIG) == ("Mouse", None)


class TestConfirmation:

    def test_decline_fails_and_clears_state(self, batch_resolver, ctx):
        _resolve(batch_resolver, ctx, ["2 laptops"])
        say(ctx, "no thanks")

        result = _resolve(batch_resolver, ctx, ["2 laptops"])

        assert isinstance(result, Failure)
        assert result.error == "Products creation cancelled"
        assert result.metadata == {"reason": "declined", "field": FIELD}
        assert FIELD not in ctx.fields

    def test_modify_replaces_the_list(self, batch_resolver, ctx):
        ctx.collected_data[SOURCE] = "1 mouse, 2 laptops"
        _resolve(batch_resolver, ctx, ["1 mouse", "2 laptops"])
        say(ctx, "replace the laptops with 2 keyboard")

        result = _resolve(batch_resolver, ctx, ["1 mouse", "2 laptops"])

        assert isinstance(result, Success)
        assert [(item["name"], item["quantity"]) for item in ctx.collected_data[FIELD]] == [("Keyboard", 2)]

    def test_unclear_reply_reprompts(self, batch_resolver, ctx):
        _resolve(batch_resolver, ctx, ["2 laptops"])
        say(ctx, "hmm")

        result = _resolve(batch_resolver, ctx, ["2 laptops"])

        assert isinstance(result, NeedsUserInput)
        assert result.metadata["error"] == "unclear_confirmation"
        assert "• Laptops (qty: 2)" in result.message
        assert ctx.field_state(FIELD).phase == FieldPhase.AWAITING_CREATE_CONFIRM


class TestCreationSubflows:

    def test_confirm_starts_one_subflow_with_item_fields(self, batch_resolver, ctx):
        in_invoice(ctx, "resolve_items", customer_id=1, items_text="1 mouse, 2 laptops at $1500")
        _resolve(batch_resolver, ctx, ["1 mouse", "2 laptops at $1500"])
        say(ctx, "yes")

        result = _resolve(batch_resolver, ctx, ["1 mouse", "2 laptops at $1500"])

        assert isinstance(result, NeedsUserInput)
        assert ctx.current_workflow == "create_product"
        assert ctx.current_step == "product_invoice_name"
        assert ctx.collected_data == {"name": "Laptops", "quantity": 2, "sale_price": 1500}
        assert ctx.parent_collected_data["customer_id"] == 1
        assert ctx.field_state(FIELD).phase == FieldPhase.CREATING_VIA_SUBFLOW

    def test_subflow_per_missing_item_then_finalize(self, batch_resolver, stores, ctx):
        items = ["1 mouse", "2 laptops at $1500", "3 cables"]
        in_invoice(ctx, "resolve_items", customer_id=1, items_text=", ".join(items))
        _resolve(batch_resolver, ctx, items)
        say(ctx, "yes")
        _resolve(batch_resolver, ctx, items)

        laptop = _finish_subflow(stores, ctx, name="Laptops", sale_price=1500)
        second = _resolve(batch_resolver, ctx, items)

        fs = ctx.field_state(FIELD)
        assert isinstance(second, NeedsUserInput)
        assert fs.creation_index == 1
        assert fs.current_item["name"] == "Cables"
        assert ctx.collected_data == {"name": "Cables", "quantity": 3}
        assert len(ctx.workflow_stack) == 1

        cable = _finish_subflow(stores, ctx, name="Cables", sale_price=5)
        result = _resolve(batch_resolver, ctx, items)

        assert isinstance(result, Success)
        resolved = ctx.collected_data[FIELD]
        assert [item["id"] for item in resolved] == [2, laptop["id"], cable["id"]]
        assert resolved[1]["price"] == 1500
        assert resolved[2]["sale_price"] == 5
        assert ctx.collected_data["customer_id"] == 1
        assert SOURCE not in ctx.collected_data
        assert ctx.workflow_stack == []
        assert ctx.active_subflow is None

    def test_record_created_meanwhile_is_reused(self, batch_resolver, stores, ctx):
        items = ["2 cables", "1 cables"]
        in_invoice(ctx, "resolve_items")
        _resolve(batch_resolver, ctx, items)
        say(ctx, "yes")
        _resolve(batch_resolver, ctx, items)
        cable = _finish_subflow(stores, ctx, name="Cables", sale_price=5)

        result = _resolve(batch_resolver, ctx, items)

        assert isinstance(result, Success)
        assert [(item["id"], item["quantity"]) for item in result.data[FIELD]] == [(cable["id"], 2), (cable["id"], 1)]
        assert len(store_records(stores, "product")) == 4


class TestAutomaticCreation:

    def test_missing_items_are_created_without_asking(self, batch_resolver, stores, ctx, mock_statsd):
        result = _resolve(batch_resolver, ctx, ["1 mouse", "2 cables", "1 cables"], config=AUTO_CONFIG)

        assert isinstance(result, Success)
        products = store_records(stores, "product")
        assert len(products) == 4
        created = products[4]
        assert created["name"] == "Cables"
        assert created["workspace_id"] == 1
        assert created["created_by"] == "user-1"
        assert [item["id"] for item in result.data[FIELD]] == [2, 4, 4]


class TestErrorHandling:

    def test_store_failure_rolls_back(self, batch_resolver, stores, ctx, mock_statsd):
        stores.require("product").find_one = MagicMock(side_effect=RuntimeError("store down"))
        ctx.collected_data[SOURCE] = "1 mouse"

        result = _resolve(batch_resolver, ctx, ["1 mouse"])

        assert isinstance(result, NeedsUserInput)
        assert result.message == "Something went wrong while resolving the products. Would you like to try again?"
        assert ctx.collected_data == {SOURCE: "1 mouse"}
        assert FIELD not in ctx.fields

    def test_unknown_model_is_a_failure(self, batch_resolver, ctx):
        config = PRODUCT_CONFIG.model_copy(update={"model": "widget"})

        result = batch_resolver.resolve_batch(FIELD, config, ["1 widget"], ctx)

        assert isinstance(result, Failure)
        assert result.metadata["error"] == "configuration"
