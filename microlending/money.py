"""
Money Helpers

All amounts are ``Decimal`` rounded half-up to the currency's minor unit.
Floats never enter the lending core; API input is converted here.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

TWO_PLACES = Decimal('0.01')
ZERO = Decimal('0.00')


def to_amount(value: Any) -> Decimal:
    """
    Convert input to a rounded Decimal amount

    Raises:
        ValueError: if the value is not a finite number
    """
    if value is None:
        raise ValueError("Amount is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def percentage_of(amount: Decimal, percentage: Decimal) -> Decimal:
    """``percentage`` percent of ``amount``, e.g. percentage_of(1000, 2.5) == 25.00"""
    return to_amount(to_amount(amount) * Decimal(str(percentage)) / Decimal('100'))


def format_amount(amount: Decimal, currency: str = "KES") -> str:
    """Format for display, e.g. ``KES 12,500.00``"""
    return f"{currency} {amount:,.2f}"
