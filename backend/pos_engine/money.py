# Overview: Fixed-precision money arithmetic used by tax, sale and refund computation.

"""
Money helpers.

Amounts are ``decimal.Decimal`` everywhere. Intermediate values keep full
precision; only the aggregation boundaries named by the callers quantize to
cents with ROUND_HALF_UP.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
CENTS = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """
    Convert a user or database value into a Decimal.

    Floats go through ``str`` so 0.1 becomes Decimal("0.1"), not its binary
    expansion. ``None`` is treated as zero.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not a money amount")
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value).strip()) if isinstance(value, str) else Decimal(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"invalid decimal amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"invalid decimal amount: {value!r}")
    return result


def quantize_money(value) -> Decimal:
    """Round to 2 decimal places, half-up."""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def percent_of(amount, rate_percent) -> Decimal:
    """Unrounded ``amount * rate_percent / 100``."""
    return to_decimal(amount) * to_decimal(rate_percent) / HUNDRED


def sum_money(values: Iterable) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return total


def format_money(value) -> str:
    return f"{quantize_money(value):.2f}"
