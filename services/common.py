"""
Common utilities and shared types.
Result tagging, currency-code helpers and locale-tolerant number parsing.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Quantities below this are treated as zero (fully exited positions)
QUANTITY_EPSILON = 1e-5

# Price quote codes expressed in pence; prices are divided by 100 to get pounds
PENCE_CURRENCIES = frozenset({"GBX", "GBp"})


@dataclass
class ServiceResult(Generic[T]):
    """
    Tagged outcome returned by every service entry point.
    Either success with data, or failure with a human-readable message.
    """
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: T = None) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ServiceResult[T]":
        return cls(success=False, error=error)


def is_pence(currency: Optional[str]) -> bool:
    """True for GBX/GBp style quote currencies."""
    return currency in PENCE_CURRENCIES


def major_currency(currency: Optional[str]) -> Optional[str]:
    """
    Map a quote currency to the ISO code FX rates are quoted in.

    Examples:
        major_currency("GBX") -> "GBP"
        major_currency("usd") -> "USD"
    """
    if currency is None:
        return None
    if is_pence(currency):
        return "GBP"
    return currency.upper()


def parse_number(value: Any) -> float:
    """
    Parse a spreadsheet cell into a float.

    Accepts native numbers and strings using either "," or "." as decimal
    separator ("12,5" -> 12.5, "1.234,56" -> 1234.56, "1,234.56" -> 1234.56).
    Empty cells parse as 0.0.

    Raises:
        ValueError: if the text is not a number
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return 0.0
        return float(value)

    text = str(value).strip().replace(" ", "").replace(" ", "").replace("%", "")
    if text in ("", "-"):
        return 0.0

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")

    return float(text)


def parse_euro_amount(text: str) -> Optional[float]:
    """
    Parse a Spanish-formatted amount ("1.234,56") into a float.

    Returns:
        The amount, or None when the text holds no digits
    """
    cleaned = text.replace(".", "").replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None
