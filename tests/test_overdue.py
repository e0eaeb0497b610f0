"""
Test suite for the overdue scanner

Tests detection of overdue loans, one-notice-per-loan delivery, best-effort
notification and skipping of overlapping ticks.
"""

import pytest
from decimal import Decimal
from datetime import date

from member_loans.config import MemberLoansConfig
from member_loans.lifecycle import LoanStatus
from member_loans.loans import LoanRegistry
from member_loans.notifications import NotificationGateway, OverdueNotice
from member_loans.overdue import OverdueScanner
from member_loans.payments import PaymentLedger
from member_loans.storage import InMemoryStorage


ORIGINATION = date(2024, 1, 15)
DUE = date(2024, 3, 15)


class RecordingGateway(NotificationGateway):
    """Gateway that keeps every notice it is handed"""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.notices = []

    def send(self, notice: OverdueNotice) -> bool:
        self.notices.append(notice)
        return self.accept


class FailingGateway(NotificationGateway):
    def __init__(self):
        self.calls = 0

    def send(self, notice: OverdueNotice) -> bool:
        self.calls += 1
        raise ConnectionError("notification service unreachable")


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def registry(storage):
    return LoanRegistry(storage, MemberLoansConfig(database_url="memory://"), clock=lambda: ORIGINATION)


@pytest.fixture
def ledger(storage, registry):
    return PaymentLedger(storage, registry)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def scanner(registry, gateway):
    return OverdueScanner(registry, gateway)


class TestOverdueDetection:
    """Test which loans the scanner flips"""

    def test_unpaid_loan_past_due(self, registry, scanner, gateway):
        """Scenario D: one transition, one notice"""
        loan = registry.create(borrower_id="B", principal="50000")

        transitioned = scanner.tick(now=date(2024, 3, 16))

        assert [found.id for found in transitioned] == [loan.id]
        assert registry.get_loan(loan.id).status == LoanStatus.OVERDUE
        assert len(gateway.notices) == 1
        notice = gateway.notices[0]
        assert notice.loan_id == loan.id
        assert notice.borrower_id == "B"
        assert notice.remaining_due == Decimal('52500.00')
        assert notice.due_date == DUE

    def test_second_tick_sends_nothing(self, registry, scanner, gateway):
        """Scenario D: already overdue loans are not notified again"""
        registry.create(borrower_id="B", principal="50000")

        scanner.tick(now=date(2024, 3, 16))
        assert scanner.tick(now=date(2024, 3, 17)) == []
        assert len(gateway.notices) == 1

    def test_due_date_itself_is_not_overdue(self, registry, scanner, gateway):
        """A loan is not overdue on its due date"""
        loan = registry.create(borrower_id="B", principal="50000")

        assert scanner.tick(now=DUE) == []
        assert registry.get_loan(loan.id).status == LoanStatus.ACTIVE
        assert gateway.notices == []

    def test_partial_loan_becomes_overdue(self, registry, ledger, scanner, gateway):
        """Partially repaid loans are scanned too and notified with their remainder"""
        loan = registry.create(borrower_id="B", principal="50000")
        ledger.record_payment(loan.id, "20000")

        scanner.tick(now=date(2024, 4, 1))

        assert registry.get_loan(loan.id).status == LoanStatus.OVERDUE
        assert gateway.notices[0].remaining_due == Decimal('32500.00')

    def test_terminal_loans_untouched(self, registry, ledger, scanner, gateway):
        """Settled and cancelled loans are never flagged"""
        settled = registry.create(borrower_id="A", principal="1000")
        ledger.settle_in_full(settled.id)
        cancelled = registry.create(borrower_id="B", principal="1000")
        registry.cancel(cancelled.id)

        assert scanner.tick(now=date(2025, 1, 1)) == []
        assert registry.get_loan(settled.id).status == LoanStatus.SETTLED
        assert registry.get_loan(cancelled.id).status == LoanStatus.CANCELLED
        assert gateway.notices == []

    def test_reconducted_loan_not_yet_due(self, registry, scanner, gateway):
        """A reconducted loan is judged against its new due date"""
        loan = registry.create(borrower_id="B", principal="50000")
        registry.reconduct(loan.id)

        assert scanner.tick(now=date(2024, 4, 1)) == []
        assert registry.get_loan(loan.id).status == LoanStatus.ACTIVE

    def test_reconducted_overdue_loan_can_be_notified_again(self, registry, scanner, gateway):
        """Reconduction re-opens the window, so a later lapse is a new event"""
        loan = registry.create(borrower_id="B", principal="50000")
        scanner.tick(now=date(2024, 3, 20))
        registry.reconduct(loan.id, now=date(2024, 3, 20))

        scanner.tick(now=date(2024, 5, 20))

        assert len(gateway.notices) == 2
        assert gateway.notices[1].remaining_due == Decimal('55125.00')

    def test_only_due_loans_scanned(self, registry, scanner):
        """Loans whose due date is still ahead are left alone"""
        early = registry.create(borrower_id="A", principal="1000", origination_date=date(2024, 1, 1))
        late = registry.create(borrower_id="B", principal="1000", origination_date=date(2024, 2, 1))

        transitioned = scanner.tick(now=date(2024, 3, 10))

        assert [found.id for found in transitioned] == [early.id]
        assert registry.get_loan(late.id).status == LoanStatus.ACTIVE

    def test_clock_used_when_no_date_given(self, storage, gateway):
        """tick falls back to the scanner clock"""
        registry = LoanRegistry(storage, MemberLoansConfig(database_url="memory://"),
                                clock=lambda: ORIGINATION)
        registry.create(borrower_id="B", principal="1000")
        scanner = OverdueScanner(registry, gateway, clock=lambda: date(2024, 6, 1))

        assert len(scanner.tick()) == 1


    def test_payment_after_due_date_is_notified(self, registry, ledger, scanner, gateway):
        """A loan a late payment already moved to overdue still gets its notice"""
        loan = registry.create(borrower_id="B", principal="50000")
        ledger.record_payment(loan.id, "1000", now=date(2024, 6, 1))
        assert registry.get_loan(loan.id).status == LoanStatus.OVERDUE

        transitioned = scanner.tick(now=date(2024, 6, 2))

        assert [found.id for found in transitioned] == [loan.id]
        assert len(gateway.notices) == 1
        assert gateway.notices[0].remaining_due == Decimal('51500.00')
        assert scanner.tick(now=date(2024, 6, 3)) == []
        assert len(gateway.notices) == 1

    def test_reconduction_to_past_due_date_is_notified(self, registry, scanner, gateway):
        """Reconducting to a due date already behind the clock yields a fresh notice"""
        loan = registry.create(borrower_id="B", principal="50000")
        scanner.tick(now=date(2024, 3, 20))

        reconducted = registry.reconduct(loan.id, now=date(2024, 6, 1))
        assert reconducted.due_date == date(2024, 5, 15)
        assert reconducted.status == LoanStatus.OVERDUE
        assert reconducted.overdue_notified is False

        scanner.tick(now=date(2024, 6, 2))

        assert len(gateway.notices) == 2
        assert gateway.notices[1].due_date == date(2024, 5, 15)
        assert gateway.notices[1].remaining_due == Decimal('55125.00')

    def test_notified_marker_is_persisted(self, registry, storage, scanner):
        """The scan stores the marker with the loan"""
        loan = registry.create(borrower_id="B", principal="50000")
        assert registry.get_loan(loan.id).overdue_notified is False

        scanner.tick(now=date(2024, 3, 16))

        assert registry.get_loan(loan.id).overdue_notified is True
        assert storage.load(registry.loans_table, loan.id)["overdue_notified"] is True

class TestNotifications:
    """Notification delivery is best effort"""

    def test_guarantor_is_a_recipient(self, registry, scanner, gateway):
        """The guarantor is warned alongside the borrower"""
        registry.create(borrower_id="B", guarantor_id="G", principal="50000")
        scanner.tick(now=date(2024, 3, 16))

        notice = gateway.notices[0]
        assert notice.guarantor_id == "G"
        assert notice.recipients == ["B", "G"]

    def test_no_guarantor(self, registry, scanner, gateway):
        """Without a guarantor only the borrower is warned"""
        registry.create(borrower_id="B", principal="50000")
        scanner.tick(now=date(2024, 3, 16))

        assert gateway.notices[0].recipients == ["B"]

    def test_raising_gateway_keeps_transition(self, registry):
        """A gateway exception neither undoes the status nor stops the scan"""
        gateway = FailingGateway()
        scanner = OverdueScanner(registry, gateway)
        first = registry.create(borrower_id="A", principal="1000")
        second = registry.create(borrower_id="B", principal="1000")

        transitioned = scanner.tick(now=date(2024, 3, 16))

        assert len(transitioned) == 2
        assert gateway.calls == 2
        assert registry.get_loan(first.id).status == LoanStatus.OVERDUE
        assert registry.get_loan(second.id).status == LoanStatus.OVERDUE

    def test_rejecting_gateway_keeps_transition(self, registry):
        """A refused notice still leaves the loan overdue"""
        gateway = RecordingGateway(accept=False)
        scanner = OverdueScanner(registry, gateway)
        loan = registry.create(borrower_id="A", principal="1000")

        scanner.tick(now=date(2024, 3, 16))

        assert registry.get_loan(loan.id).status == LoanStatus.OVERDUE
        # A failed delivery is not retried by later ticks
        scanner.tick(now=date(2024, 3, 17))
        assert len(gateway.notices) == 1


class TestOverlappingTicks:
    """At most one scan runs at a time"""

    def test_tick_skipped_while_running(self, registry, scanner, gateway):
        """A tick that finds a scan in progress does nothing"""
        loan = registry.create(borrower_id="B", principal="50000")

        scanner._running.acquire()
        try:
            assert scanner.is_running
            assert scanner.tick(now=date(2024, 3, 16)) == []
        finally:
            scanner._running.release()

        assert registry.get_loan(loan.id).status == LoanStatus.ACTIVE
        assert gateway.notices == []
        assert not scanner.is_running

    def test_tick_runs_after_previous_finished(self, registry, scanner):
        """The lock is released after each tick"""
        registry.create(borrower_id="B", principal="50000")
        assert scanner.tick(now=date(2024, 3, 1)) == []
        assert len(scanner.tick(now=date(2024, 3, 16))) == 1
        assert not scanner.is_running

    def test_gateway_reentering_tick_is_skipped(self, registry):
        """A tick triggered from inside a running scan does nothing"""
        nested_results = []

        class ReentrantGateway(NotificationGateway):
            def send(self, notice):
                nested_results.append(scanner.tick(now=date(2024, 3, 16)))
                return True

        scanner = OverdueScanner(registry, ReentrantGateway())
        registry.create(borrower_id="B", principal="50000")

        assert len(scanner.tick(now=date(2024, 3, 16))) == 1
        assert nested_results == [[]]
