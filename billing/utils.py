# billing/utils.py
"""
Money helpers shared by the cost catalog, the payment ledger and the
revenue aggregator. All amounts are Decimals with two places.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .exceptions import InvalidAmount

ZERO = Decimal('0.00')
CENT = Decimal('0.01')

# Largest value a DecimalField(max_digits=12, decimal_places=2) can hold
MAX_AMOUNT = Decimal('9999999999.99')


def quantize(value):
    """Round a Decimal to whole cents"""
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount(f"{value} is too large to store as an amount")


def check_max_amount(amount, field='amount'):
    """Raise InvalidAmount when `amount` does not fit the money columns"""
    if amount > MAX_AMOUNT:
        raise InvalidAmount(f"{field} cannot exceed {MAX_AMOUNT:,.2f}", field=field)
    return amount


def to_amount(value, field='amount'):
    """
    Parse a user-supplied monetary value into a non-negative Decimal.

    Accepts Decimal, int, float and numeric strings. Booleans, NaN,
    infinities, negative numbers and values above MAX_AMOUNT raise
    InvalidAmount.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(f"{field} must be a number", field=field)

    try:
        # str() first so floats like 0.1 don't drag binary noise along
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"{field} must be a number", field=field)

    if not amount.is_finite():
        raise InvalidAmount(f"{field} must be a finite number", field=field)

    if amount < 0:
        raise InvalidAmount(f"{field} cannot be negative", field=field)

    check_max_amount(amount, field=field)
    return quantize(amount)


def to_positive_amount(value, field='amount'):
    """Like to_amount, but zero is rejected too"""
    amount = to_amount(value, field=field)
    if amount <= 0:
        raise InvalidAmount(f"{field} must be greater than zero", field=field)
    return amount


def stored_amount(value):
    """Read an amount back from a record or an installment entry"""
    if value in (None, ''):
        return ZERO
    return quantize(Decimal(str(value)))


def format_amount(value):
    """Display an amount with thousands separators, e.g. 12,500.00"""
    return f"{stored_amount(value):,.2f}"
