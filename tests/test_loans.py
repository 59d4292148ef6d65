"""
Test suite for loans module

Tests loan creation, payment application, schedule position tracking,
error handling and concurrent payments. Balances must never drift.
"""

import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from mini_loan.audit import AuditTrail, AuditEventType
from mini_loan.currency import Money, Currency
from mini_loan.errors import (
    ValidationError, ConflictError, LoanNotFoundError,
    OverpaymentError, ClosedLoanError
)
from mini_loan.loans import LoanLedger, LoanState, add_months
from mini_loan.storage import InMemoryStorage, SQLiteStorage


ORIGINATION = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


def fixed_clock(moment=ORIGINATION):
    return lambda: moment


@pytest.fixture
def storage():
    storage = InMemoryStorage()
    yield storage
    storage.close()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def ledger(storage, audit_trail):
    return LoanLedger(storage, audit_trail=audit_trail, clock=fixed_clock())


@pytest.fixture
def loan(ledger):
    """Reference loan: 100000 at 10% for 12 months"""
    return ledger.create_loan("borrower-1", 100000, 10, 12)


class FailingAuditTrail(AuditTrail):
    """Audit trail that fails on a chosen event type"""

    def __init__(self, storage, fail_on):
        super().__init__(storage)
        self.fail_on = fail_on

    def log_event(self, event_type, *args, **kwargs):
        if event_type == self.fail_on:
            raise RuntimeError("audit store unavailable")
        return super().log_event(event_type, *args, **kwargs)


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_simple(self):
        """Test ordinary month steps and year rollover"""
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_month_end_clamped(self):
        """Test days past month end clamp to the last day"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 2) == date(2024, 3, 31)


class TestLoanCreation:
    """Test loan creation"""

    def test_create_reference_loan(self, loan):
        """Test derived figures and initial schedule position"""
        assert loan.principal == Money(Decimal('100000'), Currency.INR)
        assert loan.interest_amount.amount == Decimal('10000')
        assert loan.total_amount.amount == Decimal('110000')
        assert loan.emi_amount.amount == Decimal('9167')
        assert loan.remaining_amount == loan.total_amount
        assert loan.remaining_emis == 12
        assert loan.state == LoanState.OPEN
        assert loan.origination_date == date(2024, 1, 15)
        assert loan.next_due_date == date(2024, 2, 15)
        assert loan.version == 1
        assert loan.payments_count == 0

    def test_loan_is_persisted(self, ledger, loan):
        """Test the loan can be read back"""
        stored = ledger.get_loan("borrower-1")

        assert stored.id == loan.id
        assert stored.total_amount == loan.total_amount
        assert stored.next_due_date == loan.next_due_date
        assert stored.annual_rate_percent == Decimal('10')

    def test_zero_tenure_rejected(self, ledger, storage):
        """Test tenure 0 fails naming tenure_months and creates nothing"""
        with pytest.raises(ValidationError) as exc_info:
            ledger.create_loan("borrower-1", 100000, 10, 0)

        assert exc_info.value.field == 'tenure_months'
        assert storage.count(ledger.loans_table) == 0
        with pytest.raises(LoanNotFoundError):
            ledger.get_summary("borrower-1")

    def test_duplicate_loan_conflicts(self, ledger, loan):
        """Test a borrower cannot hold two loans"""
        with pytest.raises(ConflictError):
            ledger.create_loan("borrower-1", 5000, 5, 6)

        assert ledger.get_loan("borrower-1").id == loan.id

    def test_closed_loan_still_blocks_creation(self, ledger, loan):
        """Test one loan per borrower holds after repayment"""
        ledger.apply_payment("borrower-1", 110000)

        with pytest.raises(ConflictError):
            ledger.create_loan("borrower-1", 5000, 5, 6)

    def test_borrowers_are_independent(self, ledger, loan):
        """Test another borrower can hold their own loan"""
        other = ledger.create_loan("borrower-2", 5000, 5, 6)

        assert other.id != loan.id
        assert ledger.get_loan("borrower-2").borrower_id == "borrower-2"

    @pytest.mark.parametrize("borrower_id", ["", "   ", None])
    def test_invalid_borrower_id(self, ledger, borrower_id):
        """Test blank borrower ids are rejected"""
        with pytest.raises(ValidationError) as exc_info:
            ledger.create_loan(borrower_id, 100000, 10, 12)
        assert exc_info.value.field == 'borrower_id'

    def test_month_end_origination(self, storage):
        """Test first due date clamps to the end of a short month"""
        ledger = LoanLedger(storage, clock=fixed_clock(datetime(2024, 1, 31, tzinfo=timezone.utc)))
        loan = ledger.create_loan("borrower-1", 1200, 0, 12)

        assert loan.next_due_date == date(2024, 2, 29)

    def test_failed_audit_rolls_back_creation(self, storage):
        """Test loan creation is all-or-nothing"""
        ledger = LoanLedger(
            storage,
            audit_trail=FailingAuditTrail(storage, AuditEventType.LOAN_CREATED),
            clock=fixed_clock()
        )

        with pytest.raises(RuntimeError):
            ledger.create_loan("borrower-1", 100000, 10, 12)

        assert storage.count(ledger.loans_table) == 0
        assert storage.count(ledger.borrowers_table) == 0

        ledger.audit_trail = None
        assert ledger.create_loan("borrower-1", 100000, 10, 12).remaining_emis == 12


class TestPayments:
    """Test payment application"""

    def test_single_emi_payment(self, ledger, loan):
        """Test paying one EMI consumes one installment"""
        updated = ledger.apply_payment("borrower-1", 9167)

        assert updated.remaining_amount.amount == Decimal('100833')
        assert updated.remaining_emis == 11
        assert updated.next_due_date == date(2024, 3, 15)
        assert updated.state == LoanState.OPEN
        assert updated.version == 2

    def test_partial_payment_keeps_schedule(self, ledger, loan):
        """Test less than one EMI reduces balance only"""
        updated = ledger.apply_payment("borrower-1", "5000.50")

        assert updated.remaining_amount.amount == Decimal('104999.50')
        assert updated.remaining_emis == 12
        assert updated.next_due_date == loan.next_due_date

    def test_multi_emi_payment(self, ledger, loan):
        """Test a payment worth several EMIs consumes that many installments"""
        updated = ledger.apply_payment("borrower-1", 9167 * 3 + 100)

        assert updated.remaining_emis == 9
        assert updated.next_due_date == date(2024, 5, 15)

    def test_full_payment_closes_loan(self, ledger, loan):
        """Test paying the total closes the loan, consuming floor(amount / emi) installments"""
        updated = ledger.apply_payment("borrower-1", 110000)

        assert updated.remaining_amount.is_zero()
        assert updated.remaining_emis == 1  # 110000 // 9167 == 11
        assert updated.next_due_date == date(2025, 1, 15)
        assert updated.state == LoanState.CLOSED

        with pytest.raises(ClosedLoanError):
            ledger.apply_payment("borrower-1", 1)

    def test_paying_every_emi_closes_on_last(self, ledger, loan):
        """Test the short final payment closes the loan without consuming an installment"""
        for _ in range(11):
            ledger.apply_payment("borrower-1", 9167)

        summary = ledger.get_summary("borrower-1")
        assert summary.remaining_emis == 1
        assert summary.remaining_amount == Decimal('9163')  # 110000 - 11 * 9167

        closed = ledger.apply_payment("borrower-1", summary.remaining_amount)
        assert closed.state == LoanState.CLOSED
        assert closed.remaining_emis == 1
        assert closed.next_due_date == summary.next_due_date

    def test_overpayment_rejected(self, ledger, loan):
        """Test paying more than remaining fails and leaves the loan untouched"""
        with pytest.raises(OverpaymentError):
            ledger.apply_payment("borrower-1", "110000.01")

        after = ledger.get_loan("borrower-1")
        assert after.remaining_amount.amount == Decimal('110000')
        assert after.version == 1
        assert ledger.get_payments("borrower-1") == []

    @pytest.mark.parametrize("amount", [0, -1, "-0.01", "abc", "10.001", None,
                                        "5x000", "12abc", "1e99", "1e-5"])
    def test_invalid_amount(self, ledger, loan, amount):
        """Test non-positive, non-numeric and sub-paisa amounts"""
        with pytest.raises(ValidationError) as exc_info:
            ledger.apply_payment("borrower-1", amount)

        assert exc_info.value.field == 'amount'
        assert ledger.get_loan("borrower-1").version == 1

    def test_formatted_amount_strings(self, ledger, loan):
        """Test grouped, symbol-prefixed and exponent amounts apply their full value"""
        ledger.apply_payment("borrower-1", "₹ 9,167")
        updated = ledger.apply_payment("borrower-1", "1e3")

        assert updated.remaining_amount.amount == Decimal('99833')
        assert updated.remaining_emis == 11

    def test_malformed_terms_create_nothing(self, ledger, storage):
        """Test a principal like '1e5x' is rejected, not read as 15"""
        with pytest.raises(ValidationError) as exc_info:
            ledger.create_loan("borrower-1", "1e5x", 10, 12)

        assert exc_info.value.field == 'principal'
        assert storage.count(ledger.loans_table) == 0

    def test_payment_without_loan(self, ledger):
        """Test paying with no loan signals not found"""
        with pytest.raises(LoanNotFoundError):
            ledger.apply_payment("nobody", 100)

    def test_loan_id_must_match(self, ledger, loan):
        """Test a stale or foreign loan id is rejected"""
        with pytest.raises(LoanNotFoundError, match="not found"):
            ledger.apply_payment("borrower-1", 100, loan_id="some-other-loan")

        updated = ledger.apply_payment("borrower-1", 100, loan_id=loan.id)
        assert updated.remaining_amount.amount == Decimal('109900')

    def test_balance_never_increases(self, ledger, loan):
        """Test remaining amount is monotonically non-increasing"""
        previous = loan.remaining_amount
        for amount in ["1", "9167", "0.99", "20000", "15000.01"]:
            current = ledger.apply_payment("borrower-1", amount).remaining_amount
            assert current <= previous
            assert current.amount >= 0
            previous = current

    def test_failed_audit_rolls_back_payment(self, storage):
        """Test payment application is all-or-nothing"""
        ledger = LoanLedger(
            storage,
            audit_trail=FailingAuditTrail(storage, AuditEventType.LOAN_PAYMENT_APPLIED),
            clock=fixed_clock()
        )
        ledger.create_loan("borrower-1", 100000, 10, 12)

        with pytest.raises(RuntimeError):
            ledger.apply_payment("borrower-1", 9167)

        loan = ledger.get_loan("borrower-1")
        assert loan.remaining_amount.amount == Decimal('110000')
        assert loan.remaining_emis == 12
        assert loan.payments_count == 0
        assert storage.count(ledger.payments_table) == 0


class TestPaymentHistory:
    """Test payment records"""

    def test_history_in_order(self, ledger, loan):
        """Test records are appended in application order with snapshots"""
        ledger.apply_payment("borrower-1", 9167)
        ledger.apply_payment("borrower-1", 500)

        payments = ledger.get_payments("borrower-1")

        assert [p.sequence for p in payments] == [1, 2]
        assert [p.amount.amount for p in payments] == [Decimal('9167'), Decimal('500')]
        assert payments[0].remaining_after.amount == Decimal('100833')
        assert payments[0].emis_consumed == 1
        assert payments[1].emis_consumed == 0
        assert payments[1].applied_at == ORIGINATION
        assert all(p.loan_id == loan.id for p in payments)

    def test_payments_never_exceed_total(self, ledger, loan):
        """Test the sum of records is bounded by the total payable"""
        for amount in [50000, 50000, 10000]:
            ledger.apply_payment("borrower-1", amount)

        payments = ledger.get_payments("borrower-1")
        paid = sum((p.amount.amount for p in payments), Decimal('0'))
        assert paid == loan.total_amount.amount

    def test_history_without_loan(self, ledger):
        """Test history for unknown borrower"""
        with pytest.raises(LoanNotFoundError):
            ledger.get_payments("nobody")


class TestSummary:
    """Test the read-only summary projection"""

    def test_fresh_summary(self, ledger, loan):
        """Test summary of an untouched loan"""
        summary = ledger.get_summary("borrower-1")

        assert summary.loan_id == loan.id
        assert summary.paid_amount == Decimal('0')
        assert summary.percent_paid == 0
        assert summary.currency == "INR"
        assert not summary.is_closed

    def test_percent_paid_rounds(self, ledger, loan):
        """Test percent paid is rounded to a whole percent"""
        ledger.apply_payment("borrower-1", 9167)
        summary = ledger.get_summary("borrower-1")

        assert summary.paid_amount == Decimal('9167')
        assert summary.percent_paid == 8  # 8.33%
        assert summary.payments_count == 1

    def test_closed_summary(self, ledger, loan):
        """Test closed loans are summarized normally"""
        ledger.apply_payment("borrower-1", 110000)
        summary = ledger.get_summary("borrower-1")

        assert summary.is_closed
        assert summary.remaining_amount == Decimal('0')
        assert summary.percent_paid == 100

    def test_summary_not_found(self, ledger):
        """Test missing loan is distinct from a closed one"""
        with pytest.raises(LoanNotFoundError):
            ledger.get_summary("nobody")


class TestAuditIntegration:
    """Test ledger changes are audited"""

    def test_lifecycle_events(self, ledger, loan, audit_trail):
        """Test create, payment and close are chained in the audit trail"""
        ledger.apply_payment("borrower-1", 10000)
        ledger.apply_payment("borrower-1", 100000)

        events = audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED,
            AuditEventType.LOAN_PAYMENT_APPLIED,
            AuditEventType.LOAN_PAYMENT_APPLIED,
            AuditEventType.LOAN_CLOSED,
        ]
        assert events[1].metadata["amount"] == "10000.00"
        assert events[1].borrower_id == "borrower-1"
        assert audit_trail.verify_integrity()['valid']

    def test_rejected_payment_not_audited(self, ledger, loan, audit_trail):
        """Test failures leave no audit event"""
        with pytest.raises(OverpaymentError):
            ledger.apply_payment("borrower-1", 200000)

        assert audit_trail.count_events() == 1


@pytest.fixture(params=["memory", "sqlite"])
def any_ledger(request, tmp_path):
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "ledger.db")
    yield LoanLedger(storage, audit_trail=AuditTrail(storage), clock=fixed_clock())
    storage.close()


class TestConcurrency:
    """Test concurrent payments are linearized"""

    def test_two_half_payments(self, any_ledger):
        """Test two simultaneous half-balance payments both land"""
        any_ledger.create_loan("borrower-1", 100000, 10, 12)
        barrier = threading.Barrier(2)
        errors = []

        def pay():
            barrier.wait()
            try:
                any_ledger.apply_payment("borrower-1", 55000)
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        summary = any_ledger.get_summary("borrower-1")
        assert summary.remaining_amount == Decimal('0')
        assert summary.is_closed
        assert len(any_ledger.get_payments("borrower-1")) == 2

    def test_many_small_payments(self, any_ledger):
        """Test no update is lost under contention"""
        any_ledger.create_loan("borrower-1", 100000, 10, 12)
        workers = 16
        barrier = threading.Barrier(workers)

        def pay():
            barrier.wait()
            any_ledger.apply_payment("borrower-1", 1000)

        threads = [threading.Thread(target=pay) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        loan = any_ledger.get_loan("borrower-1")
        assert loan.remaining_amount.amount == Decimal('94000')
        assert loan.payments_count == workers
        assert loan.version == workers + 1
        assert sorted(p.sequence for p in any_ledger.get_payments("borrower-1")) == list(range(1, workers + 1))

    def test_racing_overpayments(self, any_ledger):
        """Test only one of two full-balance payments succeeds"""
        any_ledger.create_loan("borrower-1", 100000, 10, 12)
        barrier = threading.Barrier(2)
        outcomes = []

        def pay():
            barrier.wait()
            try:
                any_ledger.apply_payment("borrower-1", 110000)
                outcomes.append("paid")
            except ClosedLoanError:
                outcomes.append("closed")

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["closed", "paid"]
        assert len(any_ledger.get_payments("borrower-1")) == 1

    def test_concurrent_creation(self, any_ledger):
        """Test only one of two simultaneous creations wins"""
        barrier = threading.Barrier(2)
        outcomes = []

        def create():
            barrier.wait()
            try:
                any_ledger.create_loan("borrower-1", 100000, 10, 12)
                outcomes.append("created")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=create) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["conflict", "created"]
