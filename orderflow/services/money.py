"""
Amount conversion between gateway minor units (integer cents) and stored
major units (Decimal dollars).

Every quantization here uses ROUND_HALF_EVEN (banker's rounding), so
`to_minor_units`, `quantize` and `estimate_tax` round the same way.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Optional, Union

from ..errors import InvalidAmount

ROUNDING = ROUND_HALF_EVEN
CENTS = Decimal("0.01")
MINOR_PER_MAJOR = 100
MAX_MAJOR_AMOUNT = Decimal("999999")

Number = Union[Decimal, int, str]


def _as_decimal(amount: Number) -> Decimal:
    if isinstance(amount, float):
        # str() keeps the repr users typed (0.1 -> "0.1") instead of the binary expansion
        amount = str(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"not a number: {amount!r}")
    if not value.is_finite():
        raise InvalidAmount(f"amount must be finite, got {amount!r}")
    return value


def _check_range(value: Decimal, maximum: Optional[Decimal]) -> None:
    if value < 0:
        raise InvalidAmount(f"amount must not be negative, got {value}")
    if maximum is not None and value > maximum:
        raise InvalidAmount(f"amount {value} exceeds maximum {maximum}")


def quantize(amount: Number, maximum: Optional[Decimal] = MAX_MAJOR_AMOUNT) -> Decimal:
    """Validate and fix a major-unit amount to 2 decimal places."""
    value = _as_decimal(amount)
    _check_range(value, maximum)
    return value.quantize(CENTS, rounding=ROUNDING)


def to_minor_units(amount: Number, maximum: Optional[Decimal] = MAX_MAJOR_AMOUNT) -> int:
    """42.50 -> 4250. Half-cent inputs round to even (0.125 -> 12)."""
    value = _as_decimal(amount)
    _check_range(value, maximum)
    return int((value * MINOR_PER_MAJOR).quantize(Decimal("1"), rounding=ROUNDING))


def to_major_units(minor: int, maximum: Optional[Decimal] = MAX_MAJOR_AMOUNT) -> Decimal:
    """4250 -> Decimal("42.50")."""
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise InvalidAmount(f"minor-unit amount must be an integer, got {minor!r}")
    value = (Decimal(minor) / MINOR_PER_MAJOR).quantize(CENTS, rounding=ROUNDING)
    _check_range(value, maximum)
    return value


def estimate_tax(amount: Number, rate: Number) -> Decimal:
    """
    Flat-rate tax estimate, rounded to cents.

    This is an approximation for when the caller did not send a tax figure.
    It knows nothing about jurisdictions, exemptions or per-item tax classes
    and must not be treated as an authoritative tax computation.
    """
    value = quantize(amount)
    r = _as_decimal(rate)
    if r < 0 or r >= 1:
        raise InvalidAmount(f"tax rate must be in [0, 1), got {rate!r}")
    return (value * r).quantize(CENTS, rounding=ROUNDING)


def line_total(quantity: int, unit_price: Number) -> Decimal:
    return quantize(_as_decimal(unit_price) * quantity, maximum=None)


def amounts_match(a: Decimal, b: Decimal, tolerance: Decimal = CENTS) -> bool:
    return abs(a - b) <= tolerance
