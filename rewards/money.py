from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Money columns are Numeric(12, 2).
MAX_AMOUNT = Decimal("10000000000")


def round2(value) -> Decimal:
    """Quantize to minor currency units. The only rounding used for money."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def is_valid_amount(value) -> bool:
    return isinstance(value, Decimal) and value.is_finite() and ZERO <= value < MAX_AMOUNT
