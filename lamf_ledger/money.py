"""
Money and Rate Primitives

Fixed-point currency and percentage arithmetic for a single-currency (INR)
lending book. NEVER uses float for monetary values.

Rounding policy: every amount that lands in a persisted field is quantized to
2 decimal places with ROUND_HALF_UP. Intermediate compounding math runs at the
full context precision and is rounded once at the end.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from .errors import InvalidInput

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

MONEY_PLACES = 2
MONEY_QUANTUM = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')

Numeric = Union[Decimal, int, str, float]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a numeric value to Decimal without binary float artefacts

    Raises:
        InvalidInput: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidInput(f"Expected a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise InvalidInput(f"Cannot convert {value!r} to Decimal")
    if not result.is_finite():
        raise InvalidInput(f"Expected a finite number, got {value!r}")
    return result


def round_money(value: Numeric) -> Decimal:
    """Round to 2 decimal places using round-half-up"""
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def monthly_rate(annual_rate_percent: Numeric) -> Decimal:
    """Convert an annual percentage rate to an unrounded monthly fraction"""
    return to_decimal(annual_rate_percent) / MONTHS_PER_YEAR / HUNDRED


def percent_of(amount: Numeric, percent: Numeric) -> Decimal:
    """``amount × percent / 100``, rounded to money precision"""
    return round_money(to_decimal(amount) * to_decimal(percent) / HUNDRED)


def require_positive(value: Numeric, name: str, error=InvalidInput) -> Decimal:
    """Return value as Decimal, raising if it is not strictly positive"""
    result = to_decimal(value)
    if result <= ZERO:
        raise error(f"{name} must be positive, got {result}")
    return result


def require_non_negative(value: Numeric, name: str) -> Decimal:
    result = to_decimal(value)
    if result < ZERO:
        raise InvalidInput(f"{name} must not be negative, got {result}")
    return result


def format_inr(amount: Numeric) -> str:
    """Format for display with Indian digit grouping, e.g. ``INR 1,00,000.00``"""
    rounded = round_money(amount)
    sign = '-' if rounded < ZERO else ''
    whole, _, fraction = f"{abs(rounded):.2f}".partition('.')

    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ','.join(groups + [tail])

    return f"INR {sign}{whole}.{fraction}"
