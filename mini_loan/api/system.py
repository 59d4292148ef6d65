"""
Loan system wiring and the dependencies routes are built on
"""

from typing import Optional

from fastapi import Header

from ..audit import AuditTrail
from ..config import LoanConfig, get_config
from ..currency import Currency
from ..errors import ValidationError
from ..loans import LoanLedger
from ..storage import StorageInterface, create_storage


class LoanSystem:
    """Loan ledger with its storage and audit trail initialized"""

    def __init__(self, config: Optional[LoanConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config)
        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.ledger = LoanLedger(
            self.storage,
            audit_trail=self.audit_trail,
            currency=Currency.from_code(self.config.currency),
            max_tenure_months=self.config.max_tenure_months
        )

    def close(self) -> None:
        self.storage.close()


# Global loan system instance, created on first use
loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    global loan_system
    if loan_system is None:
        loan_system = LoanSystem()
    return loan_system


def get_borrower_id(x_borrower_id: str = Header(..., description="Authenticated borrower id")) -> str:
    """Borrower identity supplied by the authenticating layer in front of this API"""
    if not x_borrower_id.strip():
        raise ValidationError('borrower_id', "must be a non-empty string")
    return x_borrower_id.strip()
