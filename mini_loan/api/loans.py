"""
Loan endpoints
"""

from fastapi import APIRouter, Depends, status

from .system import LoanSystem, get_loan_system, get_borrower_id
from .schemas import (
    CreateLoanRequest, QuoteRequest,
    loan_to_response, quote_to_response, summary_to_response
)


router = APIRouter()


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    borrower_id: str = Depends(get_borrower_id),
    system: LoanSystem = Depends(get_loan_system)
):
    """Create the borrower's loan"""
    loan = system.ledger.create_loan(
        borrower_id=borrower_id,
        principal=request.principal,
        annual_rate_percent=request.annual_rate_percent,
        tenure_months=request.tenure_months
    )
    response = loan_to_response(loan)
    response["message"] = "Loan created successfully"
    return response


@router.get("/summary")
async def get_loan_summary(
    borrower_id: str = Depends(get_borrower_id),
    system: LoanSystem = Depends(get_loan_system)
):
    """Get the borrower's loan summary"""
    return summary_to_response(system.ledger.get_summary(borrower_id))


@router.post("/quote")
async def quote_loan(
    request: QuoteRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Preview interest, total and EMI without creating a loan"""
    return quote_to_response(system.ledger.quote(
        principal=request.principal,
        annual_rate_percent=request.annual_rate_percent,
        tenure_months=request.tenure_months
    ))
