"""
Payment endpoints
"""

from fastapi import APIRouter, Depends

from .system import LoanSystem, get_loan_system, get_borrower_id
from .schemas import PaymentRequest, loan_to_response, payment_to_response


router = APIRouter()


@router.post("/pay")
async def make_payment(
    request: PaymentRequest,
    borrower_id: str = Depends(get_borrower_id),
    system: LoanSystem = Depends(get_loan_system)
):
    """Apply a payment to the borrower's loan"""
    loan = system.ledger.apply_payment(
        borrower_id=borrower_id,
        amount=request.amount,
        loan_id=request.loan_id
    )
    response = loan_to_response(loan)
    response["message"] = "Loan closed" if loan.is_closed else "Payment successful"
    return response


@router.get("/history")
async def get_payment_history(
    borrower_id: str = Depends(get_borrower_id),
    system: LoanSystem = Depends(get_loan_system)
):
    """Get the borrower's payment history, oldest first"""
    payments = system.ledger.get_payments(borrower_id)
    return {"payments": [payment_to_response(p) for p in payments]}
