"""
Interest Accrual Module

Computes the interest-inclusive amount owed on a member loan. Interest is
charged once per grace period and compounds on every reconduction: the rate
re-applies to the then-current total, never only to the original principal.

    total_due = principal * (1 + rate_percent / 100) ** (1 + reconduction_count)

The first grace period always carries interest, hence the ``+ 1``.
Everything here is pure: no I/O, no clock.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, Overflow
from typing import Union

from .errors import ValidationError


Number = Union[Decimal, int, str]

HUNDRED = Decimal('100')


def to_decimal(value: Number, field: str) -> Decimal:
    """Coerce an amount or rate to Decimal, never through float"""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite")
    return result


def quantize_amount(amount: Decimal, precision: int = 2) -> Decimal:
    """Round an amount to the currency precision"""
    try:
        return amount.quantize(Decimal('0.1') ** precision, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the decimal context can hold
        raise ValidationError(f"amount {amount} is too large", amount=amount)


def compute_total_due(
    principal: Number,
    rate_percent: Number,
    reconduction_count: int,
    precision: int = 2
) -> Decimal:
    """
    Total amount due for a loan.

    Args:
        principal: Amount lent, strictly positive
        rate_percent: Interest per grace period in percent (5 means 5 %)
        reconduction_count: Number of rollovers, integer >= 0
        precision: Decimal places of the result

    Returns:
        Interest-inclusive total, rounded half-up

    Raises:
        ValidationError: on a non-positive principal, negative rate or
            negative / non-integer reconduction count, or a total too large
            for the decimal context
    """
    principal = to_decimal(principal, "principal")
    rate = to_decimal(rate_percent, "rate_percent")

    if principal <= 0:
        raise ValidationError("principal must be positive", principal=principal)
    if rate < 0:
        raise ValidationError("rate_percent must not be negative", rate_percent=rate)
    if isinstance(reconduction_count, bool) or not isinstance(reconduction_count, int):
        raise ValidationError("reconduction_count must be an integer")
    if reconduction_count < 0:
        raise ValidationError("reconduction_count must not be negative",
                              reconduction_count=reconduction_count)

    try:
        total = principal * (Decimal('1') + rate / HUNDRED) ** (1 + reconduction_count)
    except Overflow:
        raise ValidationError("total due is too large to compute",
                              reconduction_count=reconduction_count)
    return quantize_amount(total, precision)


def compute_interest(
    principal: Number,
    rate_percent: Number,
    reconduction_count: int,
    precision: int = 2
) -> Decimal:
    """Interest portion of the total due"""
    total = compute_total_due(principal, rate_percent, reconduction_count, precision)
    return total - quantize_amount(to_decimal(principal, "principal"), precision)
