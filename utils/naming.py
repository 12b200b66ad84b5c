import re
from typing import Dict, Optional

from utils.config import ActiveConfig
from utils.logger import logger


def pluralize(word: str, rules: Optional[Dict[str, str]] = None) -> str:
    """
    Pluralize an English noun with a small rule set.

    Irregular rules match the end of the word, so "sales person" and
    "salesperson" take the "person" rule and keep their prefix.

    Args:
        word (str): Singular noun, possibly multi-word ("sales order")
        rules (dict, optional): Irregular singular -> plural overrides

    Returns:
        str: Plural form
    """
    rules = rules if rules is not None else ActiveConfig.PLURAL_RULES
    lower = word.lower()
    for singular in sorted(rules, key=len, reverse=True):
        if lower.endswith(singular):
            return word[:len(word) - len(singular)] + rules[singular]
    if lower.endswith("s"):
        return word
    if re.search(r"[^aeiou]y$", lower):
        return word[:-1] + "ies"
    if re.search(r"(sh|ch|x|z)$", lower):
        return word + "es"
    if lower.endswith("fe"):
        return word[:-2] + "ves"
    if lower.endswith("f"):
        return word[:-1] + "ves"
    return word + "s"


class FriendlyNameCache:
    """Per-owner lookup table of user-facing names for resolution fields."""

    def __init__(self, plural_rules: Optional[Dict[str, str]] = None):
        self.plural_rules = plural_rules if plural_rules is not None else dict(ActiveConfig.PLURAL_RULES)
        self._names: Dict[str, str] = {}
        logger.debug("Initialized FriendlyNameCache")

    def get(self, field: str, friendly_name: Optional[str] = None) -> str:
        """
        Return the friendly (plural) name for a field.

        Args:
            field (str): Field name such as "product_ids"
            friendly_name (str, optional): Explicit name that wins over derivation

        Returns:
            str: Friendly name such as "products"
        """
        if friendly_name:
            return friendly_name
        if field not in self._names:
            base = re.sub(r"_ids?$", "", field).replace("_", " ").strip()
            self._names[field] = pluralize(base, self.plural_rules)
        return self._names[field]

    def clear(self) -> None:
        self._names.clear()
