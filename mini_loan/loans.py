"""
Loan Module

Handles loan creation from simple-interest terms, payment application,
schedule position tracking (remaining EMIs, next due date) and the
per-borrower payment history.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
import calendar
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .calculator import LoanQuote, Number, compute, to_decimal, MAX_TENURE_MONTHS
from .currency import Money, Currency
from .errors import (
    ValidationError, ConflictError, LoanNotFoundError,
    OverpaymentError, ClosedLoanError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger(__name__)


class LoanState(Enum):
    """Loan lifecycle states"""
    OPEN = "open"        # Accepting payments
    CLOSED = "closed"    # Fully repaid, terminal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class Loan(StorageRecord):
    """A borrower's loan: fixed terms plus the moving balance and schedule position"""
    borrower_id: str
    principal: Money
    annual_rate_percent: Decimal
    tenure_months: int
    interest_amount: Money
    total_amount: Money
    emi_amount: Money
    remaining_amount: Money
    remaining_emis: int
    origination_date: date
    next_due_date: date
    state: LoanState = LoanState.OPEN
    payments_count: int = 0
    version: int = 1

    @property
    def loan_id(self) -> str:
        return self.id

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_closed(self) -> bool:
        return self.state == LoanState.CLOSED

    @property
    def paid_amount(self) -> Money:
        return self.total_amount - self.remaining_amount

    @property
    def installments_consumed(self) -> int:
        return self.tenure_months - self.remaining_emis

    @property
    def percent_paid(self) -> int:
        """Share of the total repaid, rounded half up to a whole percent"""
        if self.total_amount.is_zero():
            return 100 if self.is_closed else 0
        ratio = self.paid_amount.amount / self.total_amount.amount * Decimal('100')
        return int(ratio.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


@dataclass
class PaymentRecord(StorageRecord):
    """Immutable record of one applied payment"""
    loan_id: str
    borrower_id: str
    amount: Money
    applied_at: datetime
    remaining_after: Money
    emis_consumed: int
    sequence: int  # 1-based position in the loan's payment history


@dataclass(frozen=True)
class LoanSummary:
    """Read-only projection of a loan for display"""
    loan_id: str
    borrower_id: str
    currency: str
    principal: Decimal
    annual_rate_percent: Decimal
    tenure_months: int
    interest_amount: Decimal
    total_amount: Decimal
    emi_amount: Decimal
    remaining_amount: Decimal
    remaining_emis: int
    next_due_date: date
    origination_date: date
    state: LoanState
    paid_amount: Decimal
    percent_paid: int
    payments_count: int

    @property
    def is_closed(self) -> bool:
        return self.state == LoanState.CLOSED

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanSummary':
        return cls(
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            currency=loan.currency.code,
            principal=loan.principal.amount,
            annual_rate_percent=loan.annual_rate_percent,
            tenure_months=loan.tenure_months,
            interest_amount=loan.interest_amount.amount,
            total_amount=loan.total_amount.amount,
            emi_amount=loan.emi_amount.amount,
            remaining_amount=loan.remaining_amount.amount,
            remaining_emis=loan.remaining_emis,
            next_due_date=loan.next_due_date,
            origination_date=loan.origination_date,
            state=loan.state,
            paid_amount=loan.paid_amount.amount,
            percent_paid=loan.percent_paid,
            payments_count=loan.payments_count
        )


class LoanLedger:
    """
    Owns every borrower's loan and applies payments against it.

    Mutations are serialized per borrower and each one runs inside a single
    storage transaction, so concurrent payments on the same loan are
    linearized and a failed operation leaves no trace.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        currency: Currency = Currency.INR,
        max_tenure_months: int = MAX_TENURE_MONTHS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.max_tenure_months = max_tenure_months
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.loans_table = "loans"
        self.borrowers_table = "borrower_loans"
        self.payments_table = "loan_payments"

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _borrower_lock(self, borrower_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(borrower_id)
            if lock is None:
                lock = self._locks[borrower_id] = threading.Lock()
            return lock

    def quote(
        self,
        principal: Number,
        annual_rate_percent: Number,
        tenure_months: Number
    ) -> LoanQuote:
        """Preview loan terms without creating anything"""
        return compute(principal, annual_rate_percent, tenure_months,
                       max_tenure_months=self.max_tenure_months)

    def create_loan(
        self,
        borrower_id: str,
        principal: Number,
        annual_rate_percent: Number,
        tenure_months: Number
    ) -> Loan:
        """
        Create the borrower's loan from simple-interest terms

        Args:
            borrower_id: Authenticated borrower identity
            principal: Amount borrowed (whole currency units)
            annual_rate_percent: Yearly simple-interest rate in percent
            tenure_months: Loan duration in months

        Returns:
            Created Loan

        Raises:
            ValidationError: Invalid borrower id or loan terms
            ConflictError: Borrower already holds a loan
        """
        borrower_id = self._check_borrower_id(borrower_id)
        quote = self.quote(principal, annual_rate_percent, tenure_months)

        with self._borrower_lock(borrower_id):
            with self.storage.atomic():
                if self.storage.exists(self.borrowers_table, borrower_id):
                    log_action(logger, "warning", "Rejected loan creation: borrower already holds a loan",
                               borrower_id=borrower_id, action="create_loan", resource="loan")
                    raise ConflictError(f"Borrower {borrower_id} already holds a loan")

                now = self._clock()
                today = now.date()
                total = Money(quote.total_amount, self.currency)

                loan = Loan(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    borrower_id=borrower_id,
                    principal=Money(quote.principal, self.currency),
                    annual_rate_percent=quote.annual_rate_percent,
                    tenure_months=quote.tenure_months,
                    interest_amount=Money(quote.interest_amount, self.currency),
                    total_amount=total,
                    emi_amount=Money(quote.emi_amount, self.currency),
                    remaining_amount=total,
                    remaining_emis=quote.tenure_months,
                    origination_date=today,
                    next_due_date=add_months(today, 1)
                )

                self._save_loan(loan)
                self.storage.save(self.borrowers_table, borrower_id, {
                    'borrower_id': borrower_id,
                    'loan_id': loan.id
                })

                if self.audit_trail:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_CREATED,
                        entity_type="loan",
                        entity_id=loan.id,
                        borrower_id=borrower_id,
                        metadata=quote.to_dict()
                    )

        log_action(logger, "info", "Loan created", borrower_id=borrower_id,
                   action="create_loan", resource=loan.id,
                   extra={"total_amount": str(loan.total_amount.amount),
                          "emi_amount": str(loan.emi_amount.amount),
                          "tenure_months": loan.tenure_months})
        return loan

    def get_loan(self, borrower_id: str) -> Loan:
        """
        Get the borrower's loan

        Raises:
            LoanNotFoundError: Borrower has no loan
        """
        borrower_id = self._check_borrower_id(borrower_id)
        index = self.storage.load(self.borrowers_table, borrower_id)
        if not index:
            raise LoanNotFoundError(borrower_id)
        loan_dict = self.storage.load(self.loans_table, index['loan_id'])
        if not loan_dict:
            raise LoanNotFoundError(borrower_id)
        return self._loan_from_dict(loan_dict)

    def get_summary(self, borrower_id: str) -> LoanSummary:
        """
        Summarize the borrower's loan for display

        Closed loans are returned normally with a zero remaining amount.

        Raises:
            LoanNotFoundError: Borrower has no loan
        """
        return LoanSummary.from_loan(self.get_loan(borrower_id))

    def get_payments(self, borrower_id: str) -> List[PaymentRecord]:
        """Payment history for the borrower's loan, oldest first"""
        loan = self.get_loan(borrower_id)
        payments_data = self.storage.find(self.payments_table, {"loan_id": loan.id})
        payments = [self._payment_from_dict(data) for data in payments_data]
        payments.sort(key=lambda p: p.sequence)
        return payments

    def apply_payment(
        self,
        borrower_id: str,
        amount: Number,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Apply a payment to the borrower's loan

        Every whole EMI covered by the payment consumes one installment and
        moves the next due date forward one month, up to the installments
        still remaining. The payment that brings the balance to zero closes
        the loan.

        Args:
            borrower_id: Authenticated borrower identity
            amount: Payment amount, 0 < amount <= remaining balance
            loan_id: Optional loan id the caller believes it is paying

        Returns:
            Updated Loan

        Raises:
            ValidationError: Amount not a positive number in currency precision
            LoanNotFoundError: Borrower has no loan, or loan_id does not match
            ClosedLoanError: Loan is already fully repaid
            OverpaymentError: Amount exceeds the remaining balance
        """
        borrower_id = self._check_borrower_id(borrower_id)
        amount_value = self._check_amount(amount)

        with self._borrower_lock(borrower_id):
            with self.storage.atomic():
                loan = self.get_loan(borrower_id)

                if loan_id is not None and loan_id != loan.id:
                    raise LoanNotFoundError(
                        borrower_id, f"Loan {loan_id} not found for borrower {borrower_id}"
                    )

                if loan.is_closed:
                    log_action(logger, "warning", "Rejected payment on closed loan",
                               borrower_id=borrower_id, action="apply_payment", resource=loan.id)
                    raise ClosedLoanError(f"Loan {loan.id} is closed")

                payment_amount = Money(amount_value, loan.currency)

                if payment_amount > loan.remaining_amount:
                    log_action(logger, "warning", "Rejected overpayment",
                               borrower_id=borrower_id, action="apply_payment", resource=loan.id,
                               extra={"amount": str(payment_amount.amount),
                                      "remaining_amount": str(loan.remaining_amount.amount)})
                    raise OverpaymentError(
                        f"Payment {payment_amount.to_string()} exceeds remaining "
                        f"balance {loan.remaining_amount.to_string()}"
                    )

                now = self._clock()
                remaining = loan.remaining_amount - payment_amount

                if loan.emi_amount.is_positive():
                    whole_emis = int(payment_amount.amount // loan.emi_amount.amount)
                    consumed = min(whole_emis, loan.remaining_emis)
                else:
                    consumed = 0

                loan.remaining_amount = remaining
                loan.remaining_emis -= consumed
                if consumed:
                    # Anchored at origination so month-end due days do not drift
                    loan.next_due_date = add_months(loan.origination_date, loan.installments_consumed + 1)
                loan.payments_count += 1
                loan.version += 1
                loan.updated_at = now
                if remaining.is_zero():
                    loan.state = LoanState.CLOSED

                payment = PaymentRecord(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    borrower_id=borrower_id,
                    amount=payment_amount,
                    applied_at=now,
                    remaining_after=remaining,
                    emis_consumed=consumed,
                    sequence=loan.payments_count
                )

                self._save_payment(payment)
                self._save_loan(loan)

                if self.audit_trail:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_PAYMENT_APPLIED,
                        entity_type="loan",
                        entity_id=loan.id,
                        borrower_id=borrower_id,
                        metadata={
                            "payment_id": payment.id,
                            "amount": payment_amount.amount,
                            "remaining_amount": remaining.amount,
                            "emis_consumed": consumed,
                            "version": loan.version
                        }
                    )
                    if loan.is_closed:
                        self.audit_trail.log_event(
                            event_type=AuditEventType.LOAN_CLOSED,
                            entity_type="loan",
                            entity_id=loan.id,
                            borrower_id=borrower_id,
                            metadata={"payments_count": loan.payments_count}
                        )

        log_action(logger, "info", "Payment applied", borrower_id=borrower_id,
                   action="apply_payment", resource=loan.id,
                   extra={"amount": str(payment_amount.amount),
                          "remaining_amount": str(loan.remaining_amount.amount),
                          "remaining_emis": loan.remaining_emis})
        if loan.is_closed:
            log_action(logger, "info", "Loan closed", borrower_id=borrower_id,
                       action="close_loan", resource=loan.id)
        return loan

    def _check_borrower_id(self, borrower_id: str) -> str:
        if not isinstance(borrower_id, str) or not borrower_id.strip():
            raise ValidationError('borrower_id', "must be a non-empty string")
        return borrower_id.strip()

    def _check_amount(self, amount: Number) -> Decimal:
        value = to_decimal('amount', amount)
        if value <= 0:
            raise ValidationError('amount', "must be greater than 0")
        try:
            quantized = value.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise ValidationError('amount', "is out of range")
        if value != quantized:
            raise ValidationError(
                'amount', f"has more decimal places than {self.currency.code} allows"
            )
        return value

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _save_payment(self, payment: PaymentRecord) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def _loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        """Convert loan to dictionary"""
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'borrower_id': loan.borrower_id,
            'currency': loan.currency.code,
            'principal': str(loan.principal.amount),
            'annual_rate_percent': str(loan.annual_rate_percent),
            'tenure_months': loan.tenure_months,
            'interest_amount': str(loan.interest_amount.amount),
            'total_amount': str(loan.total_amount.amount),
            'emi_amount': str(loan.emi_amount.amount),
            'remaining_amount': str(loan.remaining_amount.amount),
            'remaining_emis': loan.remaining_emis,
            'origination_date': loan.origination_date.isoformat(),
            'next_due_date': loan.next_due_date.isoformat(),
            'state': loan.state.value,
            'payments_count': loan.payments_count,
            'version': loan.version
        }

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency.from_code(data['currency'])

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            principal=get_money('principal'),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            tenure_months=data['tenure_months'],
            interest_amount=get_money('interest_amount'),
            total_amount=get_money('total_amount'),
            emi_amount=get_money('emi_amount'),
            remaining_amount=get_money('remaining_amount'),
            remaining_emis=data['remaining_emis'],
            origination_date=date.fromisoformat(data['origination_date']),
            next_due_date=date.fromisoformat(data['next_due_date']),
            state=LoanState(data['state']),
            payments_count=data.get('payments_count', 0),
            version=data.get('version', 1)
        )

    def _payment_to_dict(self, payment: PaymentRecord) -> Dict[str, Any]:
        """Convert payment to dictionary"""
        return {
            'id': payment.id,
            'created_at': payment.created_at.isoformat(),
            'updated_at': payment.updated_at.isoformat(),
            'loan_id': payment.loan_id,
            'borrower_id': payment.borrower_id,
            'currency': payment.amount.currency.code,
            'amount': str(payment.amount.amount),
            'applied_at': payment.applied_at.isoformat(),
            'remaining_after': str(payment.remaining_after.amount),
            'emis_consumed': payment.emis_consumed,
            'sequence': payment.sequence
        }

    def _payment_from_dict(self, data: Dict[str, Any]) -> PaymentRecord:
        """Convert dictionary to payment"""
        currency = Currency.from_code(data['currency'])
        return PaymentRecord(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            amount=Money(Decimal(data['amount']), currency),
            applied_at=datetime.fromisoformat(data['applied_at']),
            remaining_after=Money(Decimal(data['remaining_after']), currency),
            emis_consumed=data['emis_consumed'],
            sequence=data['sequence']
        )
