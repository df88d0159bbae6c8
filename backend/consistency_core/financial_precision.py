"""
MONEY ARITHMETIC

Amounts, spent totals and balances are carried as Decimal while a mutation
or report is computed, and quantized to cents (half-up) only when a value
leaves the calculation: stored on a document, compared against a threshold,
or returned to a caller.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union, Iterable

Amount = Union[float, int, str, Decimal]

CENT = Decimal('0.01')
ZERO = Decimal('0')


class FinancialPrecisionError(Exception):
    """Value cannot be interpreted as an amount"""
    pass


class NegativeValueError(Exception):
    """Amount field holds a value below zero"""
    pass


def to_decimal(value: Union[Amount, None]) -> Decimal:
    """
    Exact Decimal for an amount, unrounded.
    Floats go through str() so 0.1 stays 0.1; None (an absent amount on a
    stored document) counts as zero.
    """
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"Cannot convert '{value}' to Decimal")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def is_finite_amount(value) -> bool:
    try:
        return to_decimal(value).is_finite()
    except FinancialPrecisionError:
        return False


def round_financial(value: Amount) -> Decimal:
    """Quantize to cents, half-up"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_float(value: Amount) -> float:
    """Cents-rounded float, the form amounts take on stored documents"""
    return float(round_financial(value))


def validate_non_negative(value: Amount, field_name: str) -> None:
    if to_decimal(value) < ZERO:
        raise NegativeValueError(f"Financial value '{field_name}' cannot be negative: {value}")


def safe_divide(numerator: Amount, denominator: Amount) -> Decimal:
    """numerator / denominator, or 0 when the denominator is 0"""
    denominator = to_decimal(denominator)
    if denominator == ZERO:
        return ZERO
    return to_decimal(numerator) / denominator


def safe_subtract(a: Amount, b: Amount) -> Decimal:
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Amount) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return total


def safe_sum(values: Iterable[Amount]) -> Decimal:
    return safe_add(*list(values))


def percentage_of(part: Amount, whole: Amount) -> Decimal:
    """
    Share of whole used by part, in percent, to cents.
    percentage_of(230, 200) == Decimal('115.00'); a zero whole yields 0.
    """
    return round_financial(safe_divide(part, whole) * Decimal('100'))


def amounts_equal(a, b, tolerance: Decimal = CENT) -> bool:
    """Equal within tolerance (default one cent)"""
    return abs(to_decimal(a) - to_decimal(b)) <= tolerance
