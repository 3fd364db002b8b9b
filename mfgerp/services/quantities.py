from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from mfgerp.services.errors import InvalidQuantityError

# Matches the Numeric(18, 6) storage scale.
QUANTUM = Decimal("0.000001")


# PUBLIC_INTERFACE
def to_quantity(value: Any, *, field: str = "quantity") -> Decimal:
    """
    Coerce a value to a Decimal at storage scale.

    Floats go through str() so 0.1 stays 0.1. Non-numeric and non-finite
    values raise InvalidQuantityError.
    """
    if isinstance(value, bool):
        raise InvalidQuantityError(f"{field} must be a number", details={"field": field})
    try:
        qty = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidQuantityError(f"{field} must be a number", details={"field": field, "value": str(value)})
    if not qty.is_finite():
        raise InvalidQuantityError(f"{field} must be finite", details={"field": field, "value": str(value)})
    return qty.quantize(QUANTUM)


# PUBLIC_INTERFACE
def positive_quantity(value: Any, *, field: str = "quantity") -> Decimal:
    """Like to_quantity, but the result must be strictly greater than zero."""
    qty = to_quantity(value, field=field)
    if qty <= 0:
        raise InvalidQuantityError(f"{field} must be positive", details={"field": field, "value": str(qty)})
    return qty
