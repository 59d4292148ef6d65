"""
Amortization Calculator Module

Simple-interest loan terms: interest, total payable and EMI from principal,
annual rate and tenure. Pure functions only; safe to call on every
keystroke of a preview form.
"""

from decimal import Decimal, InvalidOperation
from dataclasses import dataclass
from typing import Any, Dict, Union

from .currency import decimal_from_string, round_to_unit
from .errors import ValidationError


MAX_TENURE_MONTHS = 360
MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')
# Bounds keep every intermediate well inside the 28-digit decimal context
MAX_PRINCIPAL = Decimal('1000000000000')
MAX_ANNUAL_RATE_PERCENT = Decimal('1000')

Number = Union[int, str, Decimal, float]


@dataclass(frozen=True)
class LoanQuote:
    """Derived loan figures, each rounded to a whole currency unit"""
    principal: Decimal
    annual_rate_percent: Decimal
    tenure_months: int
    interest_amount: Decimal
    total_amount: Decimal
    emi_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal),
            'annual_rate_percent': str(self.annual_rate_percent),
            'tenure_months': self.tenure_months,
            'interest_amount': str(self.interest_amount),
            'total_amount': str(self.total_amount),
            'emi_amount': str(self.emi_amount)
        }


def to_decimal(field: str, value: Number) -> Decimal:
    """
    Coerce a caller-supplied number into a finite Decimal

    Raises:
        ValidationError: naming ``field`` when the value is not a number
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(field, "must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # Go through repr so 0.1 stays 0.1 rather than its binary expansion
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(field, "must be a number")
    elif isinstance(value, str):
        try:
            result = decimal_from_string(value)
        except ValueError:
            raise ValidationError(field, f"'{value}' is not a number")
    else:
        raise ValidationError(field, "must be a number")

    if not result.is_finite():
        raise ValidationError(field, "must be a finite number")
    return result


def to_tenure(value: Number, max_tenure_months: int = MAX_TENURE_MONTHS) -> int:
    """Validate tenure: whole months in [1, max_tenure_months]"""
    tenure = to_decimal('tenure_months', value)
    if tenure != tenure.to_integral_value():
        raise ValidationError('tenure_months', "must be a whole number of months")
    if tenure < 1 or tenure > max_tenure_months:
        raise ValidationError(
            'tenure_months', f"must be between 1 and {max_tenure_months} months"
        )
    return int(tenure)


def compute(
    principal: Number,
    annual_rate_percent: Number,
    tenure_months: Number,
    max_tenure_months: int = MAX_TENURE_MONTHS
) -> LoanQuote:
    """
    Compute simple-interest loan terms

    Every precondition is checked before any arithmetic, so a rejected call
    performs no partial work. Intermediates are exact Decimals; rounding to
    whole currency units (half up) happens once per output.

    Args:
        principal: Amount borrowed, > 0
        annual_rate_percent: Yearly rate in percent (10 means 10%), >= 0
        tenure_months: Whole months in [1, max_tenure_months]
        max_tenure_months: Upper tenure bound

    Returns:
        LoanQuote with interest, total and EMI

    Raises:
        ValidationError: naming the first offending field
    """
    principal_value = to_decimal('principal', principal)
    if principal_value <= 0:
        raise ValidationError('principal', "must be greater than 0")
    if principal_value > MAX_PRINCIPAL:
        raise ValidationError('principal', f"cannot exceed {MAX_PRINCIPAL}")
    if principal_value != round_to_unit(principal_value):
        raise ValidationError('principal', "must be a whole number of currency units")
    principal_value = round_to_unit(principal_value)

    rate = to_decimal('annual_rate_percent', annual_rate_percent)
    if rate < 0:
        raise ValidationError('annual_rate_percent', "cannot be negative")
    if rate > MAX_ANNUAL_RATE_PERCENT:
        raise ValidationError('annual_rate_percent', f"cannot exceed {MAX_ANNUAL_RATE_PERCENT}")

    tenure = to_tenure(tenure_months, max_tenure_months)

    # principal * rate * (tenure / 12) / 100, with a single division so exact halves stay exact
    interest = principal_value * rate * Decimal(tenure) / (MONTHS_PER_YEAR * HUNDRED)
    total = principal_value + interest
    emi = total / Decimal(tenure)

    # principal is whole, so round(principal + interest) == principal + round(interest)
    interest_amount = round_to_unit(interest)
    total_amount = round_to_unit(total)
    emi_amount = round_to_unit(emi)

    return LoanQuote(
        principal=principal_value,
        annual_rate_percent=rate,
        tenure_months=tenure,
        interest_amount=interest_amount,
        total_amount=total_amount,
        emi_amount=emi_amount
    )
