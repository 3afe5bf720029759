# feerecon/models/money.py

"""
Fixed-point money helpers.

Every amount in the engine is a Decimal quantized to one minor unit (0.01).
Variance percentages are left unquantized so the percentage formula stays
exact; tolerances are Decimals where Infinity means "accept any variance".
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Annotated, Any, Optional
import math
import re

from pydantic import BeforeValidator, PlainSerializer

MINOR_UNIT = Decimal("0.01")
HALF_MINOR_UNIT = Decimal("0.005")
ZERO = Decimal("0.00")
INFINITE_TOLERANCE = Decimal("Infinity")


def to_money(value: Any) -> Decimal:
    """
    Normalize an amount to a two-place Decimal.

    Handles:
    - Decimals and integers
    - Floats (converted through their repr, never their binary value)
    - Strings with currency symbols and thousands separators
    """
    if value is None or value == "":
        return ZERO

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, bool):
        raise ValueError("Boolean is not a monetary amount")
    elif isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"Non-finite monetary amount: {value}")
        amount = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = re.sub(r"[^\d.-]", "", value)
        try:
            amount = Decimal(cleaned) if cleaned else ZERO
        except InvalidOperation:
            raise ValueError(f"Unparseable monetary amount: {value!r}")
    else:
        raise ValueError(f"Unsupported monetary amount type: {type(value).__name__}")

    return amount.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def to_minor_units(value: Any) -> int:
    """Convert an amount to an integer count of minor units (pence/cents)."""
    return int(to_money(value) / MINOR_UNIT)


def from_minor_units(units: int) -> Decimal:
    return (Decimal(units) * MINOR_UNIT).quantize(MINOR_UNIT)


def to_tolerance(value: Any) -> Decimal:
    """
    Normalize a tolerance percentage.

    None, "any", "inf" and float('inf') all mean an unbounded tolerance.
    """
    if value is None:
        return INFINITE_TOLERANCE
    if isinstance(value, Decimal):
        return value
    if isinstance(value, str) and value.strip().lower() in ("any", "inf", "infinity", "∞"):
        return INFINITE_TOLERANCE
    if isinstance(value, float) and math.isinf(value):
        return INFINITE_TOLERANCE
    tolerance = Decimal(str(value))
    if tolerance < 0:
        raise ValueError("Tolerance cannot be negative")
    return tolerance


def is_infinite(tolerance: Decimal) -> bool:
    return tolerance.is_infinite()


def tolerance_label(tolerance: Decimal) -> str:
    """Short human label used in notes and logs ("0%", "25%", "any")."""
    if is_infinite(tolerance):
        return "any"
    return f"{tolerance.normalize():f}%"


def _json_number(value: Decimal) -> Optional[float]:
    # JSON has no infinity; an unbounded tolerance goes out as null
    if value.is_infinite():
        return None
    return float(value)


# Pydantic field types
Money = Annotated[
    Decimal,
    BeforeValidator(to_money),
    PlainSerializer(_json_number, return_type=Optional[float], when_used="json"),
]

Percent = Annotated[
    Decimal,
    PlainSerializer(_json_number, return_type=Optional[float], when_used="json"),
]
