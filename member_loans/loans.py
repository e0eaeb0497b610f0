"""
Loan Module

Handles member loan creation, reconduction (rollover for another grace
period), cancellation and loan queries. Enforces the structural invariants:
the guarantor differs from the borrower, and a borrower holds at most one
open (active, partial or overdue) loan at a time.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import calendar
import logging
import uuid

from .accrual import Number, compute_interest, compute_total_due, quantize_amount, to_decimal
from .config import MemberLoansConfig, get_config
from .errors import ConcurrentModificationError, ConflictError, NotFoundError, StateError, ValidationError
from .lifecycle import LoanStatus, OPEN_STATUSES, check_transition, derive_status
from .logging_config import log_action
from .storage import DuplicateKeyError, StaleRecordError, StorageInterface, StorageRecord


logger = logging.getLogger(__name__)

LOANS_TABLE = "loans"
PAYMENTS_TABLE = "loan_payments"


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class Loan(StorageRecord):
    """Member loan with its terms and current status"""
    borrower_id: str
    principal: Decimal
    interest_rate_percent: Decimal      # Per grace period, e.g. 5 for 5 %
    origination_date: date
    due_date: date
    grace_period_months: int = 2
    guarantor_id: Optional[str] = None  # Avaliste
    reconduction_count: int = 0
    status: LoanStatus = LoanStatus.ACTIVE
    notes: Optional[str] = None
    closed_date: Optional[date] = None
    cancellation_reason: Optional[str] = None
    overdue_notified: bool = False      # Overdue notice requested for the current due date
    version: int = 1

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    def total_due(self, precision: int = 2) -> Decimal:
        """Interest-inclusive amount owed at the current reconduction count"""
        return compute_total_due(
            self.principal, self.interest_rate_percent, self.reconduction_count, precision
        )

    def interest(self, precision: int = 2) -> Decimal:
        return compute_interest(
            self.principal, self.interest_rate_percent, self.reconduction_count, precision
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['principal'] = Decimal(data['principal'])
        data['interest_rate_percent'] = Decimal(data['interest_rate_percent'])
        data['status'] = LoanStatus(data['status'])
        for field_name in ('origination_date', 'due_date', 'closed_date'):
            if data.get(field_name):
                data[field_name] = date.fromisoformat(data[field_name])
        return super().from_dict(data)


@dataclass
class LoanBalance:
    """Read-only balance view of a loan"""
    loan_id: str
    status: LoanStatus
    total_due: Decimal
    total_paid: Decimal
    remaining_due: Decimal
    due_date: date
    reconduction_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "status": self.status.value,
            "total_due": str(self.total_due),
            "total_paid": str(self.total_paid),
            "remaining_due": str(self.remaining_due),
            "due_date": self.due_date.isoformat(),
            "reconduction_count": self.reconduction_count
        }


class MemberDirectory(ABC):
    """Source of truth for member validity; the engine does not own member data"""

    @abstractmethod
    def is_active_member(self, member_id: str) -> bool:
        pass


class LoanRegistry:
    """
    Owns loan records and their lifecycle outside of payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[MemberLoansConfig] = None,
        member_directory: Optional[MemberDirectory] = None,
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.config = config or get_config()
        self.member_directory = member_directory
        self.clock = clock

        self.loans_table = LOANS_TABLE
        self.payments_table = PAYMENTS_TABLE

        self.default_rate_percent = Decimal(self.config.default_interest_rate_percent)
        self.default_grace_period_months = self.config.default_grace_period_months
        self.precision = self.config.amount_precision

    def create(
        self,
        borrower_id: str,
        principal: Number,
        guarantor_id: Optional[str] = None,
        rate_percent: Optional[Number] = None,
        origination_date: Optional[date] = None,
        grace_period_months: Optional[int] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Create a new loan for a member

        Args:
            borrower_id: Member receiving the principal
            principal: Amount lent
            guarantor_id: Optional co-signing member, distinct from the borrower
            rate_percent: Interest per grace period (defaults to configuration)
            origination_date: Date of the loan (defaults to today)
            grace_period_months: Months until the first due date

        Returns:
            Created Loan in status active

        Raises:
            ValidationError: bad input
            ConflictError: the borrower already holds an open loan
        """
        if not borrower_id:
            raise ValidationError("borrower_id is required")
        guarantor_id = guarantor_id or None
        if guarantor_id is not None and guarantor_id == borrower_id:
            raise ValidationError("guarantor must be a different member than the borrower",
                                  borrower_id=borrower_id)

        if grace_period_months is None:
            grace_period_months = self.default_grace_period_months
        if isinstance(grace_period_months, bool) or not isinstance(grace_period_months, int) \
                or grace_period_months < 1:
            raise ValidationError("grace period must be at least one month")

        principal = to_decimal(principal, "principal")
        rate = self.default_rate_percent if rate_percent is None else to_decimal(rate_percent, "rate_percent")
        # Validates principal and rate
        total_due = compute_total_due(principal, rate, 0, self.precision)
        if quantize_amount(principal, self.precision) != principal:
            raise ValidationError(
                f"principal has more than {self.precision} decimal places", principal=principal
            )

        self._check_members(borrower_id, guarantor_id)

        now = datetime.now(timezone.utc)
        origination_date = origination_date or self.clock()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            guarantor_id=guarantor_id,
            principal=quantize_amount(principal, self.precision),
            interest_rate_percent=rate,
            origination_date=origination_date,
            due_date=add_months(origination_date, grace_period_months),
            grace_period_months=grace_period_months,
            status=LoanStatus.ACTIVE,
            notes=notes
        )

        with self.storage.atomic():
            existing = self.open_loan_for(borrower_id)
            if existing:
                raise ConflictError(
                    "this member already has an active loan",
                    loan_id=existing.id,
                    status=existing.status.value,
                    borrower_id=borrower_id
                )
            try:
                self.storage.insert(
                    self.loans_table, loan.id, loan.to_dict(),
                    unique_key=self._borrower_key(borrower_id)
                )
            except DuplicateKeyError as e:
                raise ConflictError("this member already has an active loan",
                                    borrower_id=borrower_id) from e

        log_action(
            logger, "info", "Loan created",
            action="loan.create", resource=loan.id,
            extra={
                "borrower_id": borrower_id,
                "guarantor_id": guarantor_id,
                "principal": str(loan.principal),
                "rate_percent": str(rate),
                "total_due": str(total_due),
                "due_date": loan.due_date.isoformat()
            }
        )
        return loan

    def reconduct(
        self,
        loan_id: str,
        new_due_date: Optional[date] = None,
        now: Optional[date] = None
    ) -> Loan:
        """
        Roll an unpaid loan over for another grace period

        Interest compounds on the new total. The due date moves forward by the
        loan's grace period unless an explicit, later, due date is given.
        """
        now = now or self.clock()

        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if not loan.is_open:
                raise StateError(
                    f"this loan is already {loan.status.value}",
                    loan_id=loan.id, status=loan.status.value
                )

            target_due_date = new_due_date or add_months(loan.due_date, loan.grace_period_months)
            if target_due_date <= loan.due_date:
                raise ValidationError(
                    "new due date must be after the current due date",
                    loan_id=loan.id, status=loan.status.value,
                    due_date=loan.due_date.isoformat()
                )

            previous_status = loan.status
            loan.reconduction_count += 1
            loan.due_date = target_due_date
            loan.overdue_notified = False
            self._apply_derived_status(loan, now)
            self._save_loan(loan)

        log_action(
            logger, "info", "Loan reconducted",
            action="loan.reconduct", resource=loan.id,
            extra={
                "reconduction_count": loan.reconduction_count,
                "due_date": loan.due_date.isoformat(),
                "total_due": str(loan.total_due(self.precision)),
                "previous_status": previous_status.value,
                "status": loan.status.value
            }
        )
        return loan

    def cancel(self, loan_id: str, reason: Optional[str] = None, now: Optional[date] = None) -> Loan:
        """Cancel an open loan; cancellation is terminal"""
        now = now or self.clock()

        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            previous_status = loan.status
            loan.status = check_transition(loan.status, LoanStatus.CANCELLED, loan.id)
            loan.closed_date = now
            loan.cancellation_reason = reason
            self._save_loan(loan)

        log_action(
            logger, "info", "Loan cancelled",
            action="loan.cancel", resource=loan.id,
            extra={"previous_status": previous_status.value, "reason": reason}
        )
        return loan

    def refresh_status(self, loan_id: str, now: Optional[date] = None) -> Loan:
        """Re-derive and persist the status of a loan against the clock"""
        now = now or self.clock()
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status.is_terminal:
                return loan
            previous_status = loan.status
            self._apply_derived_status(loan, now)
            if loan.status != previous_status:
                self._save_loan(loan)
        return loan

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID, raising NotFoundError for unknown ids"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if not loan_dict:
            raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)
        return Loan.from_dict(loan_dict)

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        borrower_id: Optional[str] = None
    ) -> List[Loan]:
        """List loans, optionally filtered by status and borrower"""
        filters: Dict[str, Any] = {}
        if status is not None:
            filters['status'] = status.value
        if borrower_id is not None:
            filters['borrower_id'] = borrower_id
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: (loan.origination_date, loan.created_at))
        return loans

    def loans_for_member(self, member_id: str) -> Dict[str, List[Loan]]:
        """Loan history of a member, as borrower and as guarantor"""
        as_borrower = self.list_loans(borrower_id=member_id)
        as_guarantor = [
            Loan.from_dict(data)
            for data in self.storage.find(self.loans_table, {'guarantor_id': member_id})
        ]
        as_guarantor.sort(key=lambda loan: (loan.origination_date, loan.created_at))
        return {"as_borrower": as_borrower, "as_guarantor": as_guarantor}

    def open_loan_for(self, borrower_id: str) -> Optional[Loan]:
        """The borrower's open loan, if any"""
        for loan in self.list_loans(borrower_id=borrower_id):
            if loan.status in OPEN_STATUSES:
                return loan
        return None

    def total_paid(self, loan_id: str) -> Decimal:
        """Sum of the payments recorded against a loan"""
        payments = self.storage.find(self.payments_table, {'loan_id': loan_id})
        return sum((Decimal(p['amount']) for p in payments), Decimal('0'))

    def get_balance(self, loan_id: str) -> LoanBalance:
        """Total due, total paid and remaining balance of a loan"""
        loan = self.get_loan(loan_id)
        return self.balance_of(loan)

    def balance_of(self, loan: Loan) -> LoanBalance:
        total_due = loan.total_due(self.precision)
        total_paid = self.total_paid(loan.id)
        return LoanBalance(
            loan_id=loan.id,
            status=loan.status,
            total_due=total_due,
            total_paid=total_paid,
            remaining_due=total_due - total_paid,
            due_date=loan.due_date,
            reconduction_count=loan.reconduction_count
        )

    # Internals shared with the payment ledger

    def _apply_derived_status(self, loan: Loan, now: date) -> LoanStatus:
        target = derive_status(
            loan.status,
            self.total_paid(loan.id),
            loan.total_due(self.precision),
            loan.due_date,
            now
        )
        loan.status = check_transition(loan.status, target, loan.id)
        if loan.status.is_terminal and loan.closed_date is None:
            loan.closed_date = now
        return loan.status

    def _save_loan(self, loan: Loan) -> None:
        """Version-checked write; releases the borrower key once the loan is closed"""
        loan.updated_at = datetime.now(timezone.utc)
        unique_key = self._borrower_key(loan.borrower_id) if loan.is_open else None
        try:
            loan.version = self.storage.update(
                self.loans_table, loan.id, loan.to_dict(), loan.version, unique_key=unique_key
            )
        except StaleRecordError as e:
            raise ConcurrentModificationError(
                "loan was modified concurrently, retry the operation",
                loan_id=loan.id
            ) from e
        except DuplicateKeyError as e:
            raise ConflictError("this member already has an active loan",
                                loan_id=loan.id, borrower_id=loan.borrower_id) from e

    def _check_members(self, borrower_id: str, guarantor_id: Optional[str]) -> None:
        if self.member_directory is None:
            return
        if not self.member_directory.is_active_member(borrower_id):
            raise ValidationError("borrower is not an active member", borrower_id=borrower_id)
        if guarantor_id and not self.member_directory.is_active_member(guarantor_id):
            raise ValidationError("guarantor is not an active member", guarantor_id=guarantor_id)

    @staticmethod
    def _borrower_key(borrower_id: str) -> str:
        return f"borrower:{borrower_id}"
