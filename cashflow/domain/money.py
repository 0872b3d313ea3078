from decimal import Decimal, InvalidOperation

from cashflow.domain.exceptions import InvalidAmount

# Matches the decimal_places of every amount column.
AMOUNT_PLACES = 2

ZERO = Decimal("0.00")

# Largest value an amount column (max_digits=12) can hold, exclusive.
MAX_AMOUNT = Decimal("1e10")


def parse_amount(value):
    """
    Coerce ``value`` into a strictly positive Decimal with at most two places.

    Floats are converted through ``str`` so 0.1 stays 0.1. Booleans are
    rejected even though they are ints.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(value, "amount is required")

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(value, "amount is not a number")

    if not amount.is_finite():
        raise InvalidAmount(value, "amount must be finite")
    if amount <= 0:
        raise InvalidAmount(value, "amount must be greater than zero")
    if amount >= MAX_AMOUNT:
        raise InvalidAmount(value, "amount is too large")
    if amount.normalize().as_tuple().exponent < -AMOUNT_PLACES:
        raise InvalidAmount(value, f"amount allows at most {AMOUNT_PLACES} decimal places")

    return amount.quantize(Decimal(1).scaleb(-AMOUNT_PLACES))
