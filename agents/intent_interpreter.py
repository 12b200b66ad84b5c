import re
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Set

from agents import item_parser
from models.resolution import Intent, IntentLabel, ResolutionConfig
from services.datadog_service import DataDogService
from utils.config import ActiveConfig
from utils.exceptions import ProviderError
from utils.logger import logger

CONFIRM_WORDS = {"yes", "y", "yeah", "yep", "yup", "sure", "ok", "okay", "confirm", "correct", "absolutely", "definitely", "create", "proceed"}
CONFIRM_PHRASES = ("go ahead", "please do", "do it", "sounds good", "of course", "why not")
DECLINE_WORDS = {"no", "n", "nope", "nah", "cancel", "stop", "skip", "abort", "never", "don't", "dont"}
DECLINE_PHRASES = ("do not", "never mind", "nevermind", "not now", "no thanks", "forget it")
MODIFY_WORDS = {"replace", "change", "swap", "switch", "instead", "actually", "modify", "update"}
REPLACE_WORDS = {"replace", "swap", "instead"}

USE_WORDS = {"use", "yes", "y", "ok", "okay", "sure", "yeah", "yep", "existing", "that", "this"}
CREATE_WORDS = {"new", "create", "different", "another", "add"}
NONE_WORDS = {"none", "neither", "no", "nope"}
NEGATORS = {"not", "no", "nope", "nah", "never", "neither", "none", "isn't", "isnt", "aren't", "arent", "don't", "dont", "wasn't", "wasnt"}
DIRECT_NEGATORS = {"not", "don't", "dont"}
HEDGE_WORDS = {"maybe", "perhaps", "possibly", "unsure"}
HEDGE_PHRASES = ("not sure", "not certain", "don't know", "dont know", "no idea", "no clue")
ORDINALS = {"first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
            "1st": 1, "2nd": 2, "3rd": 3, "4th": 4, "5th": 5}

CONFIRMATION_TEMPLATE = (
    "The assistant asked the user a yes/no question:\n"
    "Question: {question}\n"
    "User reply: {message}\n"
    "Classify the reply:\n"
    "- 'confirm': the user agrees.\n"
    "- 'decline': the user refuses or cancels.\n"
    "- 'modify': the user wants something different (e.g. 'replace X with Y', 'actually 3 monitors').\n"
    "- 'unclear': none of the above.\n"
    "Return exactly one of: 'confirm', 'decline', 'modify', 'unclear'.\n"
    "Return plain text."
)

DUPLICATE_CHOICE_TEMPLATE = (
    "The user was shown {count} numbered existing records and asked to pick one or create a new record.\n"
    "User reply: {message}\n"
    "Rules:\n"
    "- If the user picks a record, return 'use:N' where N is its number (1-{count}).\n"
    "- If the user wants a new record, return 'create'.\n"
    "- Otherwise return 'unclear'.\n"
    "Return plain text."
)

ITEM_EXTRACTION_TEMPLATE = (
    "Extract the list of {entity} items the user wants from their message.\n"
    "Message: {message}\n"
    "Rules:\n"
    "- If the user replaces something ('replace X with Y'), return only the new items.\n"
    "- Each item has '{name_key}' (string), 'quantity' (integer, default 1) and optionally 'price' (number).\n"
    "Return a JSON array only, without markdown code blocks."
)


def _words(text: str) -> List[str]:
    return re.findall(r"[a-z0-9']+", (text or "").lower())


def _is_hedged(lowered: str, words: List[str]) -> bool:
    return bool(set(words) & HEDGE_WORDS) or any(phrase in lowered for phrase in HEDGE_PHRASES)


def _negated(words: List[str], targets: Set[str]) -> bool:
    """True when a target word directly follows "not" or "don't" ("not ok", "don't create")."""
    return any(word in DIRECT_NEGATORS and following in targets for word, following in zip(words, words[1:]))


def interpreter_fallback(func: Callable[..., Any]) -> Callable[..., Any]:
    """Run the fallback interpreter when the primary one fails or cannot decide."""
    @wraps(func)
    def wrapper(self: "FallbackInterpreter", *args, **kwargs):
        try:
            result = func(self, *args, **kwargs)
            if isinstance(result, Intent) and result.is_unclear:
                logger.debug(f"{func.__name__}: primary interpreter unclear, asking fallback")
                return getattr(self.fallback, func.__name__)(*args, **kwargs)
            return result
        except ProviderError as e:
            logger.warning(f"{func.__name__}: primary interpreter failed, using fallback: {e}")
            DataDogService.increment_metric("entity_resolution.provider_fallback", tags={"component": "interpreter"})
            return getattr(self.fallback, func.__name__)(*args, **kwargs)
    return wrapper


class IntentInterpreter:
    """Reads free-text replies into structured intents."""

    def interpret_confirmation(self, text: str, question: str = "") -> Intent:
        raise NotImplementedError

    def interpret_duplicate_choice(self, text: str, candidate_count: int) -> Intent:
        raise NotImplementedError

    def extract_items(self, text: str, config: ResolutionConfig) -> List[Dict[str, Any]]:
        raise NotImplementedError


class HeuristicInterpreter(IntentInterpreter):
    """Keyword interpreter; needs no provider and always answers."""

    def __init__(self):
        logger.debug("Initialized HeuristicInterpreter")

    def interpret_confirmation(self, text: str, question: str = "") -> Intent:
        """
        Classify a reply to a yes/no question.

        Modification requests win over declines ("no, replace it with a
        keyboard"), declines win over confirmations ("don't create it").
        Hesitant replies ("I'm not sure", "no idea") are unclear, and a
        negated confirm word ("not ok") is a decline.

        Args:
            text (str): User reply
            question (str, optional): The question asked; unused by the heuristics

        Returns:
            Intent: confirm, decline, modify or unclear
        """
        lowered = (text or "").strip().lower()
        words = _words(lowered)
        if not words:
            return Intent.unclear()

        if words[0] in MODIFY_WORDS or set(words) & REPLACE_WORDS or item_parser.looks_like_item_list(lowered):
            label = IntentLabel.MODIFY
        elif _is_hedged(lowered, words):
            label = IntentLabel.UNCLEAR
        elif (set(words) & DECLINE_WORDS or any(phrase in lowered for phrase in DECLINE_PHRASES)
              or _negated(words, CONFIRM_WORDS)):
            label = IntentLabel.DECLINE
        elif set(words) & CONFIRM_WORDS or any(phrase in lowered for phrase in CONFIRM_PHRASES):
            label = IntentLabel.CONFIRM
        else:
            label = IntentLabel.UNCLEAR
        logger.debug(f"Heuristic confirmation for '{text}': {label.value}")
        return Intent(label=label)

    def interpret_duplicate_choice(self, text: str, candidate_count: int) -> Intent:
        """
        Classify a reply to a list of duplicate candidates.

        A negated reply never adopts a candidate: "no, create a new one" and
        "none of these" create, while "not this one" or "not the second"
        point at a candidate without choosing one and are unclear.

        Args:
            text (str): User reply
            candidate_count (int): Number of candidates shown

        Returns:
            Intent: use (with a zero-based index), create or unclear
        """
        lowered = (text or "").lower()
        words = _words(lowered)
        if not words or candidate_count < 1 or _is_hedged(lowered, words):
            return Intent.unclear()

        numbers = [int(w) for w in words if w.isdigit()]
        positions = [ORDINALS[w] for w in words if w in ORDINALS]

        if set(words) & NEGATORS:
            if set(words) & CREATE_WORDS and not _negated(words, CREATE_WORDS):
                return Intent(label=IntentLabel.CREATE)
            if numbers or positions or set(words) & USE_WORDS:
                return Intent.unclear()
            if set(words) & NONE_WORDS:
                return Intent(label=IntentLabel.CREATE)
            return Intent.unclear()

        if numbers:
            if 1 <= numbers[0] <= candidate_count:
                return Intent(label=IntentLabel.USE, index=numbers[0] - 1)
            return Intent.unclear()

        if positions:
            if positions[0] <= candidate_count:
                return Intent(label=IntentLabel.USE, index=positions[0] - 1)
            return Intent.unclear()

        if set(words) & CREATE_WORDS:
            return Intent(label=IntentLabel.CREATE)
        if set(words) & NONE_WORDS:
            return Intent(label=IntentLabel.CREATE)
        if set(words) & USE_WORDS:
            return Intent(label=IntentLabel.USE, index=0)
        return Intent.unclear()

    def extract_items(self, text: str, config: ResolutionConfig) -> List[Dict[str, Any]]:
        name_key = config.identifier_field or "name"
        return item_parser.extract_items(text, name_key=name_key, quantity_key=config.quantity_field)


class AIInterpreter(IntentInterpreter):
    """Interpreter backed by the completion provider; only fixed labels are trusted."""

    def __init__(self, llm_service):
        """
        Initialize the AI interpreter.

        Args:
            llm_service (LLMService): Completion provider
        """
        self.llm_service = llm_service
        logger.debug("Initialized AIInterpreter")

    def interpret_confirmation(self, text: str, question: str = "") -> Intent:
        reply = self.llm_service.invoke(CONFIRMATION_TEMPLATE, question=question or "Should I proceed?", message=text)
        label = reply.strip().strip("'\"").lower()
        if label not in {"confirm", "decline", "modify", "unclear"}:
            raise ProviderError(f"Unknown confirmation label from provider: {reply!r}")
        logger.info(f"AI confirmation for '{text}': {label}")
        return Intent(label=IntentLabel(label))

    def interpret_duplicate_choice(self, text: str, candidate_count: int) -> Intent:
        reply = self.llm_service.invoke(DUPLICATE_CHOICE_TEMPLATE, count=str(candidate_count), message=text)
        label = reply.strip().strip("'\"").lower()
        if label in ("create", "unclear"):
            return Intent(label=IntentLabel(label))
        match = re.fullmatch(r"use:\s*(\d+)", label)
        if not match or not 1 <= int(match.group(1)) <= candidate_count:
            raise ProviderError(f"Unknown duplicate choice from provider: {reply!r}")
        logger.info(f"AI duplicate choice for '{text}': {label}")
        return Intent(label=IntentLabel.USE, index=int(match.group(1)) - 1)

    def extract_items(self, text: str, config: ResolutionConfig) -> List[Dict[str, Any]]:
        name_key = config.identifier_field or "name"
        prompt = ITEM_EXTRACTION_TEMPLATE.format(entity=config.entity_name.lower(), message=text, name_key=name_key)
        reply = self.llm_service.complete_json(prompt)
        if not isinstance(reply, list) or not all(isinstance(item, dict) and item.get(name_key) for item in reply):
            raise ProviderError(f"Provider returned an invalid item list: {reply!r}")
        items = []
        for item in reply:
            item = dict(item)
            item[name_key] = item_parser.normalize_entity_name(item[name_key])
            if item.get(config.quantity_field) in (None, ""):
                item[config.quantity_field] = 1
            items.append(item)
        return items


class FallbackInterpreter(IntentInterpreter):
    """Asks the primary interpreter first and the fallback when it errors or cannot decide."""

    def __init__(self, primary: IntentInterpreter, fallback: IntentInterpreter):
        self.primary = primary
        self.fallback = fallback
        logger.debug(f"Initialized FallbackInterpreter ({type(primary).__name__} -> {type(fallback).__name__})")

    @interpreter_fallback
    def interpret_confirmation(self, text: str, question: str = "") -> Intent:
        return self.primary.interpret_confirmation(text, question)

    @interpreter_fallback
    def interpret_duplicate_choice(self, text: str, candidate_count: int) -> Intent:
        return self.primary.interpret_duplicate_choice(text, candidate_count)

    @interpreter_fallback
    def extract_items(self, text: str, config: ResolutionConfig) -> List[Dict[str, Any]]:
        return self.primary.extract_items(text, config)


def build_interpreter(llm_service=None, use_ai: Optional[bool] = None) -> IntentInterpreter:
    """
    Build the interpreter selected by configuration.

    The heuristic interpreter is returned unless AI interpretation is enabled
    and a provider is available.
    """
    use_ai = ActiveConfig.USE_AI_INTERPRETER if use_ai is None else use_ai
    if use_ai and llm_service is not None:
        return FallbackInterpreter(AIInterpreter(llm_service), HeuristicInterpreter())
    return HeuristicInterpreter()
