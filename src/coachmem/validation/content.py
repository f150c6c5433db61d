"""Content validator for candidate memories.

The validator is the cheapest gate in the storage pipeline and runs before
any embedding or storage cost. It rejects candidates that are too short,
contain placeholder tokens, are logically incoherent, or are repetitive.

Example:
    >>> validate_content("I am allergic to peanuts", "food_diet")
    True
    >>> validate_content("I drink oatmeal every morning", "food_diet")
    False
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from coachmem.types.memory import MemoryCategory

logger = logging.getLogger(__name__)

__all__ = ["ValidationVerdict", "check_content", "validate_content"]

MIN_CONTENT_LENGTH = 5
REPETITION_MIN_WORDS = 3
REPETITION_UNIQUE_RATIO = 0.5

_PLACEHOLDER_PATTERNS = [
    re.compile(r"\bundefined\b", re.IGNORECASE),
    re.compile(r"\bnull\b", re.IGNORECASE),
    re.compile(r"(?<!\w)n/a(?!\w)", re.IGNORECASE),
    re.compile(r"\[object object\]", re.IGNORECASE),
    re.compile(r"\{\{.*?\}\}|\$\{.*?\}"),
    re.compile(r"<(?:placeholder|insert[^>]*|todo)>", re.IGNORECASE),
]

# Incoherent statements regardless of category
_GENERAL_NONSENSE = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\beating water\b",
        r"\bdrinking food\b",
        r"\bsleeping exercise\b",
        r"\brunning sleep\b",
        r"\bbreathing exercise.*\bfood\b",
        r"\bworkout.*\bwater.*\bdrink\b",
    )
]

_LIQUIDS = (
    r"water|juice|coffee|tea|soda|broth|wine|beer|lemonade|kombucha|"
    r"smoothies?|milkshakes?|protein shakes?"
)
_SOLIDS = (
    r"oatmeal|porridge|bread|rice|pasta|steak|chicken|eggs?|cereal|salad|"
    r"sandwich(?:es)?|pizza|cheese|meat|nuts|peanuts|almonds|toast|granola|"
    r"burgers?|fries|vegetables|fruit|apples?|bananas?|food"
)
_EAT_VERBS = r"eat|eats|eating|ate|chew|chews|chewing"
_DRINK_VERBS = r"drink|drinks|drinking|drank|sip|sips|sipping|gulp|gulps"

# Category-specific incoherence for food_diet memories
_FOOD_DIET_NONSENSE = [
    # A liquid being eaten ("eats water"), but not "eats coffee cake"
    re.compile(
        rf"\b(?:{_EAT_VERBS})\s+(?:\w+\s+)?(?:{_LIQUIDS})\b"
        r"(?!\s+(?:cake|cakes|sandwich\w*|crackers?|biscuits?|cookies?|ice|jelly|bread))",
        re.IGNORECASE,
    ),
    # A solid being drunk ("drinks oatmeal"), but not "drinks chicken broth"
    re.compile(
        rf"\b(?:{_DRINK_VERBS})\s+(?:\w+\s+)?(?:{_SOLIDS})\b"
        r"(?!\s+(?:broth|soup|stock|milk|water|juice|shakes?|smoothies?|drinks?)\b)",
        re.IGNORECASE,
    ),
    re.compile(r"\benjoys? eating (?:water|air|nothing)\b", re.IGNORECASE),
    re.compile(r"\blikes? drinking (?:solid|food)\b", re.IGNORECASE),
    re.compile(r"\ballergic to (?:water|air|breathing|oxygen)\b", re.IGNORECASE),
    re.compile(r"\bprefers? eating (?:impossible|contradictory)\b", re.IGNORECASE),
]

_CATEGORY_RULES: dict[MemoryCategory, list[re.Pattern[str]]] = {
    MemoryCategory.FOOD_DIET: _FOOD_DIET_NONSENSE,
}


@dataclass(frozen=True)
class ValidationVerdict:
    """Outcome of validating one candidate.

    Attributes:
        valid: Whether the candidate may be stored
        rule: Name of the rule that rejected it (None when valid)
        detail: The offending fragment, if any
    """

    valid: bool
    rule: Optional[str] = None
    detail: Optional[str] = None


def _reject(rule: str, detail: str | None = None) -> ValidationVerdict:
    return ValidationVerdict(valid=False, rule=rule, detail=detail)


def check_content(
    content: str, category: MemoryCategory | str | None = None
) -> ValidationVerdict:
    """Validate a candidate memory and report which rule failed.

    Rules run in order: minimum length, placeholder tokens, general
    nonsense patterns, category-specific incoherence, repetition.

    Args:
        content: Candidate memory text
        category: Candidate category (enum or its string value)

    Returns:
        ValidationVerdict describing the outcome
    """
    text = (content or "").strip()
    if len("".join(text.split())) < MIN_CONTENT_LENGTH:
        return _reject("min_length", text)

    for pattern in _PLACEHOLDER_PATTERNS:
        match = pattern.search(text)
        if match:
            return _reject("placeholder", match.group(0))

    for pattern in _GENERAL_NONSENSE:
        match = pattern.search(text)
        if match:
            return _reject("nonsensical", match.group(0))

    if category is not None:
        try:
            category_enum = MemoryCategory(category)
        except ValueError:
            return _reject("unknown_category", str(category))
        for pattern in _CATEGORY_RULES.get(category_enum, []):
            match = pattern.search(text)
            if match:
                return _reject(f"{category_enum.value}_incoherent", match.group(0))

    words = text.lower().split()
    if len(words) > REPETITION_MIN_WORDS:
        unique_ratio = len(set(words)) / len(words)
        if unique_ratio < REPETITION_UNIQUE_RATIO:
            return _reject("repetitive", f"unique ratio {unique_ratio:.2f}")

    return ValidationVerdict(valid=True)


def validate_content(content: str, category: MemoryCategory | str | None = None) -> bool:
    """Return True when the candidate passes every validation rule."""
    verdict = check_content(content, category)
    if not verdict.valid:
        logger.debug(f"Rejected candidate ({verdict.rule}): {verdict.detail!r}")
    return verdict.valid
