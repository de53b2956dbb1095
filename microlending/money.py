"""
Money Utility Module

Fixed-precision helpers for currency amounts. Every monetary value in the
engine is a Decimal rounded to cents. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Iterable, Union
import re

# High precision for intermediate results; rounding happens at cents only
getcontext().prec = 28

ZERO = Decimal('0.00')
CENT = Decimal('0.01')
HUNDRED = Decimal('100')

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """
    Convert a number to Decimal without going through binary float

    Args:
        value: Decimal, int, str or float

    Returns:
        Decimal value

    Raises:
        ValueError: If the value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def round_money(value: Number) -> Decimal:
    """Round to 2 decimal places, half up"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Number]) -> Decimal:
    """Sum amounts exactly and round the result to cents"""
    total = Decimal('0')
    for value in values:
        total += to_decimal(value)
    return round_money(total)


def decimal_from_string(value: str) -> Decimal:
    """
    Parse a user-entered amount such as "RD$ 1,250.50" or "1250,50"

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif clean_value.count(',') == 1:
        whole, fraction = clean_value.split(',')
        if len(fraction) <= 2:
            clean_value = f"{whole}.{fraction}"
        else:
            clean_value = whole + fraction
    elif clean_value.count(',') > 1:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def format_money(amount: Number, currency_code: str = "DOP") -> str:
    """Format for display, e.g. 'DOP 1,375.00'"""
    return f"{currency_code} {round_money(amount):,.2f}"
