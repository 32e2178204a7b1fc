import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

MONEY_QUANTUM = Decimal("0.01")
# Numeric(12, 2): ten integer digits.
MAX_AMOUNT = Decimal("9999999999.99")

_NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")

_MAGNITUDES = {
    "k": Decimal("1000"),
    "thousand": Decimal("1000"),
    "lakh": Decimal("100000"),
    "lakhs": Decimal("100000"),
    "lac": Decimal("100000"),
    "crore": Decimal("10000000"),
    "crores": Decimal("10000000"),
    "cr": Decimal("10000000"),
}
_MAGNITUDE_ALT = "|".join(sorted(_MAGNITUDES, key=len, reverse=True))

_LEAD_RE = re.compile(
    r"(?:worth|costs?|costing|price[ds]?|priced at|for|of|₹|rs\.?|inr)\s*"
    rf"(?P<num>\d[\d,]*(?:\.\d+)?)\s*(?P<mag>{_MAGNITUDE_ALT})?\b",
    re.IGNORECASE,
)
_SUFFIXED_RE = re.compile(
    rf"(?P<num>\d[\d,]*(?:\.\d+)?)\s*(?P<mag>{_MAGNITUDE_ALT})\b",
    re.IGNORECASE,
)
_BARE_RE = re.compile(r"(?<![\w.])(?P<num>\d{3,}[\d,]*(?:\.\d+)?)(?![\w.])")


def to_money(value) -> Decimal:
    """Coerce *value* to a 2-place Decimal (half-up). Raises ValueError if not numeric."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).replace(",", "").strip())
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def first_number(text: str) -> Optional[Decimal]:
    """First numeric token in *text* with thousands separators removed."""
    match = _NUMBER_RE.search(text or "")
    if not match:
        return None
    try:
        return Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        return None


def _scaled(num: str, mag: Optional[str]) -> Optional[Decimal]:
    try:
        value = Decimal(num.replace(",", ""))
    except InvalidOperation:
        return None
    if mag:
        value *= _MAGNITUDES[mag.lower()]
    return value if value > 0 else None


def parse_amount_phrase(text: str) -> Optional[Decimal]:
    """Read a purchase amount from phrases like "worth 50k", "₹1,500", "2 lakh".

    Price-led phrases win over magnitude-suffixed numbers, which win over
    bare numbers of three or more digits (so model numbers like "iPhone 15"
    are not mistaken for prices).
    """
    if not text:
        return None
    for pattern in (_LEAD_RE, _SUFFIXED_RE):
        match = pattern.search(text)
        if match:
            value = _scaled(match.group("num"), match.groupdict().get("mag"))
            if value is not None:
                return value
    match = _BARE_RE.search(text)
    if match:
        return _scaled(match.group("num"), None)
    return None


def is_storable(amount: Optional[Decimal]) -> bool:
    """True for a positive amount that fits the money columns."""
    return amount is not None and Decimal("0") < amount <= MAX_AMOUNT
