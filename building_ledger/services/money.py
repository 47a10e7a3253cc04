"""Fixed-precision money helpers.

Every monetary value is a Decimal rounded half-up to cents. Intermediate
results are rounded before being compared or persisted.
"""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value) -> Decimal:
    """Convert int/float/str/Decimal/None to Decimal without binary drift."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value) -> Decimal:
    """Round half-up to 2 decimals."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def non_negative(value) -> Decimal:
    """round2(value) floored at zero."""
    return max(ZERO, round2(value))


def money_sum(values) -> Decimal:
    return round2(sum((to_decimal(v) for v in values), ZERO))
