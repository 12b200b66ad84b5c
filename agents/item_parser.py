"""
Deterministic helpers that turn free text and loosely shaped items into
structured entity items. Used by the heuristic interpreter and the batch
resolver; nothing here talks to a provider.
"""

import re
from typing import Any, Dict, Iterable, List, Optional

NAME_KEYS = ("name", "title", "label", "identifier")
NON_NAME_KEYS = {"id", "created_at", "updated_at", "workspace", "workspace_id", "created_by", "quantity", "price"}

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE = re.compile(r"^\+?\(?\d{1,4}\)?[-\s.]?\(?\d{1,4}\)?[-\s.]?\d{1,9}$")
_SKU = re.compile(r"^(?=.*\d)(?=.*[a-z])[a-z0-9\-_]{5,}$", re.IGNORECASE)

_PRICE = re.compile(
    r"(?:\b(?:at|for|@)\s*)?\$\s*(\d[\d,]*(?:\.\d+)?)(?:\s*(?:each|apiece|per\s+\w+))?"
    r"|(?:\b(?:at|@)\s*)(\d[\d,]*(?:\.\d+)?)(?:\s*(?:each|apiece|per\s+\w+))?",
    re.IGNORECASE,
)
_LEADING_QTY = re.compile(r"^\s*(\d+)\s*(?:x\b|×|pcs\b|pieces?\b|units?\b|items?\b|of\b)?\s*", re.IGNORECASE)
_TRAILING_QTY = re.compile(r"\s*(?:\bx\s*|×\s*|\bqty:?\s*|\bquantity:?\s*)(\d+)\b|\b(\d+)\s*(?:x\b|×|pcs\b|pieces?\b|units?\b)", re.IGNORECASE)
_ARTICLE = re.compile(r"^(?:a|an|the|some)\s+", re.IGNORECASE)
_SPLIT = re.compile(r"\s*(?:,|;|\n|\band\b|&)\s*", re.IGNORECASE)
_REPLACE_TARGET = re.compile(r"^.*?\b(?:replace|change|swap|switch)\b.*?\b(?:with|to|for)\b\s+(.*)$", re.IGNORECASE | re.DOTALL)
_MODIFY_FILLER = re.compile(r"\b(?:actually|instead|no|please|i want|i need|make it|use|let's do|lets do)\b[,:]?", re.IGNORECASE)


def normalize_entity_name(name: str) -> str:
    """Collapse whitespace; title-case names typed entirely in lower or upper case."""
    name = re.sub(r"\s+", " ", str(name or "")).strip()
    if name and (name == name.lower() or name == name.upper()):
        name = " ".join(word.capitalize() for word in name.split(" "))
    return name


def detect_search_field(identifier: str, available_fields: List[str]) -> str:
    """
    Guess which field a bare identifier refers to.

    Args:
        identifier (str): Free-text identifier
        available_fields (list): Candidate fields in priority order

    Returns:
        str: "email", "phone" or "sku" when the shape matches and the field
        is available, otherwise "name" when available, else the first field
    """
    identifier = identifier.strip()
    if _EMAIL.match(identifier) and "email" in available_fields:
        return "email"
    if _PHONE.match(identifier):
        for field in ("phone", "contact"):
            if field in available_fields:
                return field
    if _SKU.match(identifier):
        for field in ("sku", "code"):
            if field in available_fields:
                return field
    if "name" in available_fields or not available_fields:
        return "name"
    return available_fields[0]


def _to_number(raw: str) -> float:
    value = float(raw.replace(",", ""))
    return int(value) if value.is_integer() else value


def parse_item_text(text: str, name_key: str = "name", quantity_key: str = "quantity") -> Dict[str, Any]:
    """
    Parse one free-text item such as "2 laptops at $1,500".

    Returns:
        dict: {name_key, quantity_key[, "price"]}; the name is empty when
        nothing but numbers was given
    """
    rest = str(text or "").strip()
    item: Dict[str, Any] = {}

    price = _PRICE.search(rest)
    if price:
        item["price"] = _to_number(price.group(1) or price.group(2))
        rest = (rest[:price.start()] + " " + rest[price.end():]).strip()

    quantity = None
    leading = _LEADING_QTY.match(rest)
    if leading and rest[leading.end():].strip():
        quantity = int(leading.group(1))
        rest = rest[leading.end():]
    else:
        trailing = _TRAILING_QTY.search(rest)
        if trailing:
            quantity = int(trailing.group(1) or trailing.group(2))
            rest = (rest[:trailing.start()] + " " + rest[trailing.end():]).strip()

    rest = _ARTICLE.sub("", rest.strip(" .!-:"))
    item[name_key] = normalize_entity_name(rest)
    item[quantity_key] = quantity if quantity is not None else 1
    return item


def looks_like_item_list(text: str) -> bool:
    """True for replies such as "3 monitors and a keyboard" that restate the items."""
    return bool(re.match(r"^\s*\d+\s*(?:x\s*|×\s*)?[a-z]{2,}", str(text or ""), re.IGNORECASE))


def split_item_list(text: str) -> List[str]:
    """Split "2 laptops, a mouse and 3 cables" into item phrases."""
    return [part.strip() for part in _SPLIT.split(str(text or "")) if part and part.strip()]


def extract_items(text: str, name_key: str = "name", quantity_key: str = "quantity") -> List[Dict[str, Any]]:
    """
    Extract a replacement item list from a modification request.

    "replace the laptop with 3 monitors and a keyboard" yields the monitors
    and the keyboard; the phrase before "with" names what is replaced.
    """
    text = str(text or "").strip()
    target = _REPLACE_TARGET.match(text)
    if target:
        text = target.group(1)
    else:
        text = _MODIFY_FILLER.sub(" ", text)
    items = []
    for part in split_item_list(text):
        item = parse_item_text(part, name_key=name_key, quantity_key=quantity_key)
        if item.get(name_key):
            items.append(item)
    return items


def extract_entity_name(item: Any, entity_type: str = "", name_keys: Iterable[str] = NAME_KEYS) -> str:
    """
    Best display name for a loosely structured item.

    Looks at name-like keys, then the entity-type key, then the start of a
    description, then any remaining string value.
    """
    if isinstance(item, str):
        return normalize_entity_name(item)
    if not isinstance(item, dict):
        return f"Unknown {entity_type}".strip()

    for key in name_keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return normalize_entity_name(value)

    type_key = entity_type.lower().replace(" ", "_")
    if type_key and isinstance(item.get(type_key), str) and item[type_key].strip():
        return normalize_entity_name(item[type_key])

    description = item.get("description")
    if isinstance(description, str) and description.strip():
        first_part = re.split(r"[.,;\n]", description.strip())[0]
        return normalize_entity_name(first_part[:50])

    for key, value in item.items():
        if key in NON_NAME_KEYS or key.endswith("_id"):
            continue
        if isinstance(value, str) and value.strip():
            return normalize_entity_name(value)

    return f"Unknown {entity_type}".strip()


def normalize_item(raw: Any, name_key: str, quantity_key: str, search_fields: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Turn a raw batch item into a dict with at least a quantity.

    String items are parsed as free text; an identifier that looks like an
    email, phone or SKU is stored under that field instead of the name key.
    """
    if isinstance(raw, dict):
        item = dict(raw)
    else:
        item = parse_item_text(str(raw), name_key=name_key, quantity_key=quantity_key)
        if search_fields:
            field = detect_search_field(item[name_key], search_fields)
            if field != name_key and field in search_fields and field != "name":
                item[field] = item.pop(name_key)
    if item.get(quantity_key) in (None, ""):
        item[quantity_key] = 1
    return item
