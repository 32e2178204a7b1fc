"""Ordered keyword rule tables shared by chat commits and statement import.

Rules are evaluated top to bottom and the first rule with a matching keyword
in the text wins, so more specific keywords ("amazon prime") must sit above
broader ones ("amazon").
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from app.schemas.finance import FALLBACK_CATEGORY, IncomeSourceType, SpendingCategory

SHORT_KEYWORD_LENGTH = 3


@dataclass(frozen=True)
class KeywordRule:
    """Keywords match at the start of a word; keywords of three letters or
    fewer must be the whole word (plural allowed), so "ola" skips "coca-cola"
    and "bus" skips "business".
    """

    label: str
    keywords: tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "_pattern", keyword_pattern(self.keywords))

    def matches(self, text: str) -> bool:
        return self._pattern.search(text) is not None


def keyword_pattern(keywords: Iterable[str]) -> re.Pattern[str]:
    parts = [
        rf"\b{re.escape(kw)}s?\b" if len(kw) <= SHORT_KEYWORD_LENGTH else rf"\b{re.escape(kw)}"
        for kw in keywords
    ]
    return re.compile("|".join(parts), re.IGNORECASE)


EXPENSE_CATEGORY_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        SpendingCategory.FOOD,
        (
            "zepto", "swiggy", "zomato", "dominos", "mcdonalds", "kfc", "grocer",
            "restaurant", "coffee", "cafe", "lunch", "dinner", "breakfast", "snack",
            "pizza", "burger", "food",
        ),
    ),
    KeywordRule(
        SpendingCategory.ENTERTAINMENT,
        ("netflix", "amazon prime", "spotify", "bookmyshow", "cinema", "movie", "concert", "game"),
    ),
    KeywordRule(
        SpendingCategory.TRANSPORT,
        ("uber", "ola", "metro", "petrol", "fuel", "taxi", "cab", "bus", "train", "auto"),
    ),
    KeywordRule(
        SpendingCategory.SHOPPING,
        ("amazon", "flipkart", "myntra", "ajio", "meesho", "fashion", "clothes", "shoes", "shirt", "shopping"),
    ),
    KeywordRule(SpendingCategory.BILLS, ("jio", "airtel", "recharge", "rent", "bill")),
    KeywordRule(
        SpendingCategory.HEALTHCARE,
        ("pharma", "medicose", "medicine", "hospital", "clinic", "doctor"),
    ),
    KeywordRule(SpendingCategory.UTILITIES, ("electricity", "water", "gas", "internet", "broadband", "mobile")),
    KeywordRule(SpendingCategory.EDUCATION, ("education", "course", "training", "school", "college", "tuition")),
)

INCOME_SOURCE_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(IncomeSourceType.SALARY, ("salary", "payroll", "paycheck", "pay")),
    KeywordRule(IncomeSourceType.FREELANCE, ("freelance", "work")),
    KeywordRule(IncomeSourceType.BUSINESS, ("business", "profit")),
    KeywordRule(IncomeSourceType.INVESTMENT, ("investment", "dividend")),
    KeywordRule(IncomeSourceType.RENTAL, ("rent", "rental")),
)

RECURRING_KEYWORDS: tuple[str, ...] = ("salary", "rent", "subscription", "recharge", "sip", "emi")
_RECURRING_RE = keyword_pattern(RECURRING_KEYWORDS)

RECURRING_FREQUENCIES = frozenset({"daily", "weekly", "monthly", "yearly"})

_CATEGORY_REPLY_RE = re.compile("|".join(c.value for c in SpendingCategory), re.IGNORECASE)


def _first_match(rules: tuple[KeywordRule, ...], texts: tuple[Optional[str], ...]) -> Optional[str]:
    haystack = " ".join(t for t in texts if t).lower()
    if not haystack:
        return None
    for rule in rules:
        if rule.matches(haystack):
            return str(rule.label)
    return None


def categorize_expense(*texts: Optional[str]) -> str:
    """Category for a merchant/name/description; ``other`` when nothing matches."""
    return _first_match(EXPENSE_CATEGORY_RULES, texts) or FALLBACK_CATEGORY


def detect_income_source(*texts: Optional[str]) -> str:
    return _first_match(INCOME_SOURCE_RULES, texts) or IncomeSourceType.OTHER.value


def detect_recurring(*texts: Optional[str]) -> bool:
    haystack = " ".join(t for t in texts if t)
    return _RECURRING_RE.search(haystack) is not None


def normalize_category(value: Optional[str]) -> Optional[str]:
    """Map a free-form label onto the category enumeration, or None."""
    if not value:
        return None
    cleaned = value.strip().lower()
    try:
        return SpendingCategory(cleaned).value
    except ValueError:
        return None


def match_category_reply(text: str) -> Optional[str]:
    """Earliest category name contained in a user's reply (case-insensitive)."""
    match = _CATEGORY_REPLY_RE.search(text or "")
    return match.group(0).lower() if match else None


def clean_merchant_name(merchant: str) -> str:
    cleaned = re.sub(r"[^\w\s-]", "", merchant or "")
    return re.sub(r"\s+", " ", cleaned).strip()[:50]
