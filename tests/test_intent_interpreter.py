"""
Tests for intent interpretation and item parsing
(agents/intent_interpreter.py, agents/item_parser.py, utils/naming.py).

The heuristic interpreter is exercised directly; the AI interpreter runs
against a mocked ``LLMService``.
"""

import sys
import os
from unittest.mock import MagicMock

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from agents.intent_interpreter import (
    AIInterpreter,
    FallbackInterpreter,
    HeuristicInterpreter,
    build_interpreter,
)
from agents.item_parser import (
    detect_search_field,
    extract_entity_name,
    extract_items,
    looks_like_item_list,
    normalize_entity_name,
    normalize_item,
    parse_item_text,
    split_item_list,
)
from models.resolution import IntentLabel
from utils.exceptions import ProviderError
from utils.naming import FriendlyNameCache, pluralize
from workflows.invoice import PRODUCT_CONFIG


@pytest.fixture
def heuristic():
    return HeuristicInterpreter()


class TestHeuristicConfirmation:

    @pytest.mark.parametrize("text", ["yes", "Yeah, go ahead", "ok", "sure thing", "please do"])
    def test_confirm(self, heuristic, text):
        assert heuristic.interpret_confirmation(text).label == IntentLabel.CONFIRM

    @pytest.mark.parametrize("text", ["no", "nope", "don't create it", "cancel", "never mind"])
    def test_decline(self, heuristic, text):
        assert heuristic.interpret_confirmation(text).label == IntentLabel.DECLINE

    @pytest.mark.parametrize("text", [
        "replace the laptop with 3 monitors",
        "actually 3 monitors",
        "no, replace it with a keyboard",
        "2 monitors and a keyboard",
        "use a tablet instead",
    ])
    def test_modify(self, heuristic, text):
        assert heuristic.interpret_confirmation(text).label == IntentLabel.MODIFY

    @pytest.mark.parametrize("text", ["", "hmm", "what do you mean?"])
    def test_unclear(self, heuristic, text):
        assert heuristic.interpret_confirmation(text).is_unclear

    @pytest.mark.parametrize("text", ["not sure", "I'm not sure", "no idea", "maybe", "I don't know"])
    def test_hesitation_is_unclear(self, heuristic, text):
        assert heuristic.interpret_confirmation(text).is_unclear

    @pytest.mark.parametrize("text", ["not ok", "not yes"])
    def test_negated_confirm_word_declines(self, heuristic, text):
        assert heuristic.interpret_confirmation(text).label == IntentLabel.DECLINE


class TestHeuristicDuplicateChoice:

    @pytest.mark.parametrize("text,index", [
        ("2", 1),
        ("use number 3", 2),
        ("the second one", 1),
        ("first", 0),
        ("yes", 0),
        ("use that", 0),
    ])
    def test_use(self, heuristic, text, index):
        intent = heuristic.interpret_duplicate_choice(text, 3)
        assert intent.label == IntentLabel.USE
        assert intent.index == index

    @pytest.mark.parametrize("text", ["new", "create a new one", "none of these", "no", "no, create a new one", "none of them"])
    def test_create(self, heuristic, text):
        assert heuristic.interpret_duplicate_choice(text, 3).label == IntentLabel.CREATE

    @pytest.mark.parametrize("text", ["7", "fifth", "hmm", ""])
    def test_unclear_never_guesses(self, heuristic, text):
        assert heuristic.interpret_duplicate_choice(text, 3).is_unclear

    @pytest.mark.parametrize("text", [
        "not this one",
        "not that one",
        "no, not the first one",
        "not 2",
        "the second one isn't right",
        "don't create a new one",
        "I don't know",
        "not sure",
        "maybe the first",
    ])
    def test_negated_or_hesitant_reply_never_adopts(self, heuristic, text):
        intent = heuristic.interpret_duplicate_choice(text, 3)
        assert intent.label != IntentLabel.USE
        assert intent.is_unclear

    def test_no_candidates_is_unclear(self, heuristic):
        assert heuristic.interpret_duplicate_choice("1", 0).is_unclear


class TestAIInterpreter:

    def test_confirmation_label(self, mock_llm_service):
        mock_llm_service.invoke.return_value = "'confirm'"
        intent = AIInterpreter(mock_llm_service).interpret_confirmation("go for it", "Create it?")
        assert intent.label == IntentLabel.CONFIRM

    def test_unknown_label_raises(self, mock_llm_service):
        mock_llm_service.invoke.return_value = "maybe later"
        with pytest.raises(ProviderError):
            AIInterpreter(mock_llm_service).interpret_confirmation("hmm")

    def test_duplicate_choice_use(self, mock_llm_service):
        mock_llm_service.invoke.return_value = "use:2"
        intent = AIInterpreter(mock_llm_service).interpret_duplicate_choice("the second", 3)
        assert intent.label == IntentLabel.USE and intent.index == 1

    def test_duplicate_choice_out_of_range_raises(self, mock_llm_service):
        mock_llm_service.invoke.return_value = "use:9"
        with pytest.raises(ProviderError):
            AIInterpreter(mock_llm_service).interpret_duplicate_choice("the ninth", 3)

    def test_extract_items_normalizes(self, mock_llm_service):
        mock_llm_service.complete_json.return_value = [{"name": "monitor", "quantity": 3}, {"name": "keyboard"}]
        items = AIInterpreter(mock_llm_service).extract_items("3 monitors and a keyboard", PRODUCT_CONFIG)
        assert items == [{"name": "Monitor", "quantity": 3}, {"name": "Keyboard", "quantity": 1}]

    def test_extract_items_rejects_bad_shape(self, mock_llm_service):
        mock_llm_service.complete_json.return_value = [{"quantity": 3}]
        with pytest.raises(ProviderError):
            AIInterpreter(mock_llm_service).extract_items("3", PRODUCT_CONFIG)


class TestFallbackInterpreter:

    def test_provider_error_falls_back(self, mock_llm_service, mock_statsd):
        mock_llm_service.invoke.side_effect = ProviderError("LLM error: timeout")
        interpreter = FallbackInterpreter(AIInterpreter(mock_llm_service), HeuristicInterpreter())

        assert interpreter.interpret_confirmation("yes").label == IntentLabel.CONFIRM
        metrics = [call.args[0] for call in mock_statsd.increment.call_args_list]
        assert "entity_resolution.provider_fallback" in metrics

    def test_unclear_primary_asks_fallback(self, mock_llm_service):
        mock_llm_service.invoke.return_value = "unclear"
        interpreter = FallbackInterpreter(AIInterpreter(mock_llm_service), HeuristicInterpreter())
        intent = interpreter.interpret_duplicate_choice("2", 3)
        assert intent.label == IntentLabel.USE and intent.index == 1

    def test_primary_answer_is_kept(self, mock_llm_service):
        mock_llm_service.invoke.return_value = "decline"
        interpreter = FallbackInterpreter(AIInterpreter(mock_llm_service), HeuristicInterpreter())
        assert interpreter.interpret_confirmation("yes").label == IntentLabel.DECLINE

    def test_item_extraction_falls_back(self, mock_llm_service):
        mock_llm_service.complete_json.side_effect = ProviderError("LLM returned invalid JSON")
        interpreter = FallbackInterpreter(AIInterpreter(mock_llm_service), HeuristicInterpreter())
        items = interpreter.extract_items("replace the laptop with 3 monitors", PRODUCT_CONFIG)
        assert items == [{"name": "Monitors", "quantity": 3}]

    def test_build_interpreter(self, mock_llm_service):
        assert isinstance(build_interpreter(mock_llm_service, use_ai=False), HeuristicInterpreter)
        assert isinstance(build_interpreter(None, use_ai=True), HeuristicInterpreter)
        assert isinstance(build_interpreter(mock_llm_service, use_ai=True), FallbackInterpreter)


class TestItemParser:

    def test_parse_quantity_and_price(self):
        assert parse_item_text("2 laptops at $1,500") == {"name": "Laptops", "quantity": 2, "price": 1500}

    def test_parse_article_defaults_quantity(self):
        assert parse_item_text("a wireless mouse") == {"name": "Wireless Mouse", "quantity": 1}

    def test_parse_trailing_quantity(self):
        assert parse_item_text("USB cable x3") == {"name": "USB cable", "quantity": 3}

    def test_split_item_list(self):
        assert split_item_list("2 laptops, a mouse and 3 cables") == ["2 laptops", "a mouse", "3 cables"]

    def test_extract_items_replace_keeps_only_new_items(self):
        items = extract_items("replace the laptop with 3 monitors and a keyboard")
        assert items == [{"name": "Monitors", "quantity": 3}, {"name": "Keyboard", "quantity": 1}]

    def test_extract_items_strips_filler(self):
        assert extract_items("actually 3 monitors") == [{"name": "Monitors", "quantity": 3}]

    def test_looks_like_item_list(self):
        assert looks_like_item_list("3 monitors")
        assert looks_like_item_list("2x keyboard")
        assert not looks_like_item_list("yes")
        assert not looks_like_item_list("42")

    def test_normalize_entity_name(self):
        assert normalize_entity_name("  macbook   pro ") == "Macbook Pro"
        assert normalize_entity_name("MacBook Pro") == "MacBook Pro"

    @pytest.mark.parametrize("identifier,expected", [
        ("john@example.com", "email"),
        ("555-123-4567", "phone"),
        ("MBP-M4X", "sku"),
        ("John Smith", "name"),
    ])
    def test_detect_search_field(self, identifier, expected):
        assert detect_search_field(identifier, ["name", "email", "phone", "sku"]) == expected

    def test_extract_entity_name_fallbacks(self):
        assert extract_entity_name({"title": "desk lamp"}) == "Desk Lamp"
        assert extract_entity_name({"product": "Monitor"}, "product") == "Monitor"
        assert extract_entity_name({"description": "Standing desk, oak"}) == "Standing desk"
        assert extract_entity_name({"id": 3, "workspace_id": 1}, "Product") == "Unknown Product"

    def test_normalize_item_moves_sku_to_search_field(self):
        item = normalize_item("MBP-M4X", "name", "quantity", ["name", "sku"])
        assert "name" not in item
        assert item["sku"].lower() == "mbp-m4x"
        assert item["quantity"] == 1

    def test_normalize_item_keeps_dicts(self):
        assert normalize_item({"name": "Mouse"}, "name", "quantity") == {"name": "Mouse", "quantity": 1}


class TestNaming:

    @pytest.mark.parametrize("word,plural", [
        ("product", "products"),
        ("category", "categories"),
        ("box", "boxes"),
        ("person", "people"),
        ("items", "items"),
        ("sales person", "sales people"),
        ("salesperson", "salespeople"),
        ("grandchild", "grandchildren"),
    ])
    def test_pluralize(self, word, plural):
        assert pluralize(word) == plural

    def test_friendly_name_cache(self):
        cache = FriendlyNameCache()
        assert cache.get("product_ids") == "products"
        assert cache.get("customer_id") == "customers"
        assert cache.get("customer_id", "client") == "client"
        cache.clear()
        assert cache.get("sales_order_id") == "sales orders"
        assert cache.get("sales_person_id") == "sales people"
