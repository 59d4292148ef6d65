"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, Optional, Union
from pydantic import AliasChoices, BaseModel, Field

from ..calculator import LoanQuote
from ..loans import Loan, LoanSummary, PaymentRecord


# Numbers are re-validated by the ledger; strings are accepted so clients
# can send exact decimals.
NumberInput = Union[int, float, str]


class LoanTermsRequest(BaseModel):
    principal: NumberInput = Field(..., description="Amount borrowed, whole currency units")
    annual_rate_percent: NumberInput = Field(
        ...,
        validation_alias=AliasChoices("annual_rate_percent", "interestRate"),
        description="Yearly simple-interest rate in percent"
    )
    tenure_months: NumberInput = Field(
        ...,
        validation_alias=AliasChoices("tenure_months", "tenureMonths"),
        description="Loan duration in months (1-360)"
    )


class CreateLoanRequest(LoanTermsRequest):
    pass


class QuoteRequest(LoanTermsRequest):
    pass


class PaymentRequest(BaseModel):
    amount: NumberInput = Field(..., description="Payment amount as number or decimal string")
    loan_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("loan_id", "loanId"),
        description="Loan being paid; must match the borrower's loan when given"
    )


def quote_to_response(quote: LoanQuote) -> Dict[str, Any]:
    return quote.to_dict()


def loan_to_response(loan: Loan) -> Dict[str, Any]:
    return {
        "loan_id": loan.id,
        "borrower_id": loan.borrower_id,
        "currency": loan.currency.code,
        "principal": str(loan.principal.amount),
        "annual_rate_percent": str(loan.annual_rate_percent),
        "tenure_months": loan.tenure_months,
        "interest_amount": str(loan.interest_amount.amount),
        "total_amount": str(loan.total_amount.amount),
        "emi_amount": str(loan.emi_amount.amount),
        "remaining_amount": str(loan.remaining_amount.amount),
        "remaining_emis": loan.remaining_emis,
        "next_due_date": loan.next_due_date.isoformat(),
        "state": loan.state.value,
        "version": loan.version
    }


def summary_to_response(summary: LoanSummary) -> Dict[str, Any]:
    return {
        "loan_id": summary.loan_id,
        "borrower_id": summary.borrower_id,
        "currency": summary.currency,
        "principal": str(summary.principal),
        "annual_rate_percent": str(summary.annual_rate_percent),
        "tenure_months": summary.tenure_months,
        "interest_amount": str(summary.interest_amount),
        "total_amount": str(summary.total_amount),
        "emi_amount": str(summary.emi_amount),
        "remaining_amount": str(summary.remaining_amount),
        "remaining_emis": summary.remaining_emis,
        "next_due_date": summary.next_due_date.isoformat(),
        "origination_date": summary.origination_date.isoformat(),
        "state": summary.state.value,
        "is_closed": summary.is_closed,
        "paid_amount": str(summary.paid_amount),
        "percent_paid": summary.percent_paid,
        "payments_count": summary.payments_count
    }


def payment_to_response(payment: PaymentRecord) -> Dict[str, Any]:
    return {
        "payment_id": payment.id,
        "loan_id": payment.loan_id,
        "amount": str(payment.amount.amount),
        "applied_at": payment.applied_at.isoformat(),
        "remaining_after": str(payment.remaining_after.amount),
        "emis_consumed": payment.emis_consumed,
        "sequence": payment.sequence
    }
