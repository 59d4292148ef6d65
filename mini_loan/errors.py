"""Exception hierarchy for loan ledger operations."""

from typing import Optional


class LoanError(Exception):
    """Base exception for all loan ledger errors."""

    kind = "loan_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class ValidationError(LoanError, ValueError):
    """Raised when an input is malformed or out of range. Names the field."""

    kind = "validation_error"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["field"] = self.field
        return result


class ConflictError(LoanError):
    """Raised when a borrower already holds a loan."""

    kind = "conflict"


class LoanNotFoundError(LoanError):
    """Raised when the borrower has no loan."""

    kind = "not_found"

    def __init__(self, borrower_id: str, message: Optional[str] = None):
        super().__init__(message or f"No loan found for borrower {borrower_id}")
        self.borrower_id = borrower_id


class OverpaymentError(LoanError):
    """Raised when a payment exceeds the remaining balance."""

    kind = "overpayment"


class ClosedLoanError(LoanError):
    """Raised when a payment is attempted on a closed loan."""

    kind = "loan_closed"
