from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from .errors import ValidationError
from .money import to_decimal
from .time_utils import to_utc_naive


# Maximum money amount: 9,999,999,999.99 (Numeric(12, 2))
MAX_AMOUNT = Decimal("9999999999.99")


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion.

    Accepts ints and plain digit strings. Rejects bools, floats, decimal
    points and scientific notation so "2.5" units never truncate silently.
    """
    if value is None:
        raise ValidationError(f"{field} is required")
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_positive_int(value: Any, field: str) -> int:
    result = coerce_int(value, field)
    if result <= 0:
        raise ValidationError(f"{field} must be greater than 0", details={"field": field, "value": result})
    return result


def coerce_id(value: Any, field: str) -> int:
    return coerce_positive_int(value, field)


def coerce_optional_id(value: Any, field: str) -> int | None:
    if value is None:
        return None
    return coerce_positive_int(value, field)


def require_actor(user_id: Any) -> int:
    """The only authorization-adjacent check the engine makes: an actor is present."""
    if user_id is None or (isinstance(user_id, str) and not user_id.strip()):
        raise ValidationError("actor id is required")
    return coerce_id(user_id, "user_id")


def coerce_money(
    value: Any,
    field: str,
    *,
    allow_zero: bool = True,
    allow_negative: bool = False,
) -> Decimal:
    if value is None:
        raise ValidationError(f"{field} is required")
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValidationError(f"{field} must be a decimal amount", details={"field": field})
    if amount.as_tuple().exponent < -2:
        raise ValidationError(f"{field} must have at most 2 decimal places", details={"field": field})
    if not allow_negative and amount < 0:
        raise ValidationError(f"{field} cannot be negative", details={"field": field})
    if not allow_zero and amount == 0:
        raise ValidationError(f"{field} must be greater than 0", details={"field": field})
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field} exceeds maximum allowed amount", details={"field": field})
    return amount


def coerce_rate(value: Any, field: str = "rate_percent") -> Decimal:
    if value is None:
        raise ValidationError(f"{field} is required")
    try:
        rate = to_decimal(value)
    except ValueError:
        raise ValidationError(f"{field} must be a decimal number")
    if rate < 0:
        raise ValidationError(f"{field} cannot be negative")
    return rate


def coerce_choice(value: Any, field: str, choices: Iterable[str]) -> str:
    allowed = tuple(choices)
    if not isinstance(value, str) or value not in allowed:
        raise ValidationError(
            f"Invalid {field}. Must be one of: {', '.join(allowed)}",
            details={"field": field, "value": value},
        )
    return value


def coerce_datetime(value: Any, field: str) -> datetime | None:
    """Optional ISO-8601 string or datetime, normalized to UTC-naive."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return to_utc_naive(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"{field} must be an ISO-8601 datetime", details={"field": field, "value": str(value)}
        )
