"""
Overdue Scanner Module

Periodic batch job: flips active and partially repaid loans whose due date
has passed to overdue, then asks the notification gateway to warn the
borrower and guarantor. Loans that a payment or reconduction already moved
to overdue are notified by the next tick. The scheduler that calls
``tick`` lives outside the engine.
"""

from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
import logging
import threading

from .errors import LoanError
from .lifecycle import LoanStatus
from .loans import Loan, LoanRegistry
from .logging_config import log_action
from .notifications import NotificationGateway, OverdueNotice
from .storage import StorageError


logger = logging.getLogger(__name__)

SCANNED_STATUSES = (LoanStatus.ACTIVE, LoanStatus.PARTIAL, LoanStatus.OVERDUE)


class OverdueScanner:
    """
    Detects newly overdue loans

    A loan is notified at most once per due date: the ``overdue_notified``
    marker is set in the same write that moves it to overdue, and only
    reconduction clears it. Overlapping ticks are skipped.
    """

    def __init__(
        self,
        registry: LoanRegistry,
        gateway: NotificationGateway,
        clock: Optional[Callable[[], date]] = None
    ):
        self.registry = registry
        self.gateway = gateway
        self.clock = clock or registry.clock
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def tick(self, now: Optional[date] = None) -> List[Loan]:
        """
        Run one scan

        Args:
            now: Evaluation date (defaults to today)

        Returns:
            Loans moved to overdue (or first notified as overdue) by this tick
        """
        now = now or self.clock()
        if not self._running.acquire(blocking=False):
            logger.warning("Overdue scan already in progress, skipping tick")
            return []
        try:
            return self._scan(now)
        finally:
            self._running.release()

    def _scan(self, now: date) -> List[Loan]:
        candidates = [
            loan
            for status in SCANNED_STATUSES
            for loan in self.registry.list_loans(status=status)
            if loan.due_date < now and not loan.overdue_notified
        ]

        transitioned = []
        failed_notifications = 0
        for candidate in candidates:
            try:
                result = self._mark_overdue(candidate.id, now)
            except (LoanError, StorageError) as e:
                # Leave it for the next tick; other loans still get scanned
                logger.warning(f"Overdue check failed for loan {candidate.id}: {e}")
                continue
            if result is None:
                continue

            loan, remaining_due = result
            transitioned.append(loan)
            if not self._notify(loan, remaining_due):
                failed_notifications += 1

        log_action(
            logger, "info", "Overdue scan completed",
            action="loan.overdue_scan",
            extra={
                "as_of": now.isoformat(),
                "candidates": len(candidates),
                "marked_overdue": len(transitioned),
                "failed_notifications": failed_notifications
            }
        )
        return transitioned

    def _mark_overdue(self, loan_id: str, now: date) -> Optional[Tuple[Loan, Decimal]]:
        """Re-read the loan and mark it overdue and notified if it still qualifies"""
        registry = self.registry
        with registry.storage.atomic():
            loan = registry.get_loan(loan_id)
            if loan.status not in SCANNED_STATUSES or loan.overdue_notified \
                    or not loan.due_date < now:
                return None

            balance = registry.balance_of(loan)
            previous_status = loan.status
            registry._apply_derived_status(loan, now)
            if loan.status != LoanStatus.OVERDUE:
                return None
            loan.overdue_notified = True
            registry._save_loan(loan)

        log_action(
            logger, "info", "Loan marked overdue",
            action="loan.overdue", resource=loan.id,
            extra={
                "previous_status": previous_status.value,
                "due_date": loan.due_date.isoformat(),
                "remaining_due": str(balance.remaining_due)
            }
        )
        return loan, balance.remaining_due

    def _notify(self, loan: Loan, remaining_due: Decimal) -> bool:
        """Best effort: a failed delivery never undoes the status change"""
        notice = OverdueNotice(
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            guarantor_id=loan.guarantor_id,
            remaining_due=remaining_due,
            due_date=loan.due_date
        )
        try:
            accepted = self.gateway.send(notice)
        except Exception:
            logger.exception(f"Overdue notification for loan {loan.id} raised")
            return False
        if not accepted:
            logger.warning(f"Overdue notification for loan {loan.id} was not accepted")
        return bool(accepted)
