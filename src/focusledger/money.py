"""
Fixed-point helpers for credit amounts.

Breakdown lines are kept at 4 decimal places and anything that touches a
balance at 2, both rounded half-up.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

LINE_PLACES = Decimal("0.0001")
AMOUNT_PLACES = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Convert ints, strings and floats to Decimal without binary drift.

    Floats go through ``str`` so ``0.05`` becomes ``Decimal("0.05")``.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a numeric amount: {value!r}")
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"Not a numeric amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return result


def quantize_line(value: Decimal) -> Decimal:
    """Round to breakdown precision (4 places)."""
    return value.quantize(LINE_PLACES, rounding=ROUND_HALF_UP)


def quantize_amount(value: Decimal) -> Decimal:
    """Round to balance precision (2 places)."""
    return value.quantize(AMOUNT_PLACES, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    """Render an amount for human-readable breakdown lines."""
    return f"{quantize_amount(value):f}"
