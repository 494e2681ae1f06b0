from __future__ import annotations

from decimal import Decimal, InvalidOperation

from app.core.errors import InvalidInput


def to_decimal(value, what: str = "quantity") -> Decimal:
    """Decimal from a number or numeric string; InvalidInput for anything else."""
    if isinstance(value, bool):
        raise InvalidInput(f"{what} must be a number, got {value!r}")
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{what} must be a number, got {value!r}") from None
    if not d.is_finite():
        raise InvalidInput(f"{what} must be finite, got {value!r}")
    return d


def positive(value, what: str = "quantity") -> Decimal:
    d = to_decimal(value, what)
    if d <= 0:
        raise InvalidInput(f"{what} must be positive, got {d}")
    return d
