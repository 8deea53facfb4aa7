"""Fixed-precision decimal helpers for monetary values."""

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any

QUANT = Decimal("0.00000001")
ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value: Any) -> Decimal:
    """Convert a number to Decimal without binary float artefacts.

    Floats are routed through ``str`` so that ``0.1`` becomes ``Decimal("0.1")``
    rather than its exact binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def quantize(value: Decimal) -> Decimal:
    """Round a Decimal to the engine's fixed precision (1e-8, banker's rounding)."""
    return value.quantize(QUANT, rounding=ROUND_HALF_EVEN)


def money(value: Any) -> Decimal:
    """Convert and quantize in one step."""
    return quantize(to_decimal(value))
