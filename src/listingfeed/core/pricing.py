"""Locale-aware price extraction (core domain)."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import re
from typing import Iterable, NamedTuple, Optional, Sequence

DEFAULT_CURRENCY = "EUR"
CURRENCIES = ("EUR", "RSD", "USD")

# Anything at or above this is a phone number, a year run-on or other noise.
PRICE_CEILING = Decimal(10_000_000)

# Separators must sit between digits, so "2, 500 EUR" reads as 500 and not 2500.
_AMOUNT = r"(\d+(?:[ \u00a0\u202f,.]\d+)*)\s*"


@dataclass(frozen=True)
class PricePattern:
    """An amount regex tagged with the currency it implies."""

    pattern: re.Pattern
    currency: str


class PriceResult(NamedTuple):
    amount: Optional[Decimal]
    currency: str


# Ordered: an amount followed by a EUR marker is preferred over RSD, then USD.
DEFAULT_PRICE_PATTERNS: Sequence[PricePattern] = (
    PricePattern(re.compile(_AMOUNT + r"(?:€|EUR|евро)", re.IGNORECASE), "EUR"),
    PricePattern(re.compile(_AMOUNT + r"(?:RSD|дин|динар)", re.IGNORECASE), "RSD"),
    PricePattern(re.compile(_AMOUNT + r"(?:USD|\$|доллар)", re.IGNORECASE), "USD"),
)


def _resolve_separators(digits: str) -> str:
    """Turn a grouped number into a plain decimal literal.

    With both separators present the last one is the decimal mark. A lone
    comma followed by exactly three digits groups thousands, otherwise it is
    a decimal comma. Repeated separators of one kind always group thousands.
    """

    has_comma = "," in digits
    has_dot = "." in digits
    if has_comma and has_dot:
        if digits.rfind(",") > digits.rfind("."):
            return digits.replace(".", "").replace(",", ".")
        return digits.replace(",", "")
    if has_comma:
        parts = digits.split(",")
        if len(parts) > 2 or len(parts[-1]) == 3:
            return "".join(parts)
        return digits.replace(",", ".")
    if has_dot and digits.count(".") > 1:
        return digits.replace(".", "")
    return digits


def parse_amount(raw: str) -> Optional[Decimal]:
    """Parse a matched amount, returning None for garbage or out-of-range values."""

    digits = re.sub(r"[\s\u00a0\u202f]", "", raw).strip(".,")
    if not digits:
        return None
    try:
        amount = Decimal(_resolve_separators(digits))
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0 or amount >= PRICE_CEILING:
        return None
    return amount


def extract_price(
    text: str,
    patterns: Iterable[PricePattern] = DEFAULT_PRICE_PATTERNS,
) -> PriceResult:
    """Return the first acceptable amount and its currency.

    Each pattern contributes only its first match; a rejected amount falls
    through to the next pattern. No amount at all is a normal outcome
    ("price on request") and yields ``PriceResult(None, DEFAULT_CURRENCY)``.
    """

    for price_pattern in patterns:
        match = price_pattern.pattern.search(text)
        if not match:
            continue
        amount = parse_amount(match.group(1))
        if amount is not None:
            return PriceResult(amount, price_pattern.currency)
    return PriceResult(None, DEFAULT_CURRENCY)
