"""
Loan Lifecycle State Machine

Single place where a loan's status is decided. Every mutator (payment,
reconduction, cancellation, overdue scan) goes through ``derive_status`` and
``check_transition`` so the rules cannot drift apart.

    active  -> partial, overdue, settled, cancelled
    partial -> overdue, settled, cancelled
    overdue -> partial, settled, cancelled, active (after reconduction)
    settled, cancelled: terminal
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import StateError


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"          # Running, nothing repaid yet
    PARTIAL = "partial"        # Partially repaid, not yet due
    OVERDUE = "overdue"        # Due date passed without full repayment
    SETTLED = "settled"        # Fully repaid
    CANCELLED = "cancelled"    # Cancelled by an administrator

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        """Open loans count against the one-loan-per-borrower rule"""
        return self in OPEN_STATUSES


TERMINAL_STATUSES: FrozenSet[LoanStatus] = frozenset({LoanStatus.SETTLED, LoanStatus.CANCELLED})
OPEN_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.ACTIVE, LoanStatus.PARTIAL, LoanStatus.OVERDUE
})

ALLOWED_TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset({
        LoanStatus.PARTIAL, LoanStatus.OVERDUE, LoanStatus.SETTLED, LoanStatus.CANCELLED
    }),
    LoanStatus.PARTIAL: frozenset({
        LoanStatus.OVERDUE, LoanStatus.SETTLED, LoanStatus.CANCELLED
    }),
    LoanStatus.OVERDUE: frozenset({
        LoanStatus.PARTIAL, LoanStatus.SETTLED, LoanStatus.CANCELLED, LoanStatus.ACTIVE
    }),
    LoanStatus.SETTLED: frozenset(),
    LoanStatus.CANCELLED: frozenset(),
}


def derive_status(
    current: LoanStatus,
    total_paid: Decimal,
    total_due: Decimal,
    due_date: date,
    now: date
) -> LoanStatus:
    """
    Status implied by the loan's balances and the clock.

    Settled dominates overdue, and overdue dominates partial. Terminal
    statuses never change.
    """
    if current.is_terminal:
        return current
    if total_paid >= total_due:
        return LoanStatus.SETTLED
    if due_date < now:
        return LoanStatus.OVERDUE
    if total_paid > 0:
        return LoanStatus.PARTIAL
    return LoanStatus.ACTIVE


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    """Staying in place is always allowed"""
    return current == target or target in ALLOWED_TRANSITIONS[current]


def check_transition(current: LoanStatus, target: LoanStatus, loan_id: Optional[str] = None) -> LoanStatus:
    """
    Return ``target`` if the state graph allows it, raise StateError otherwise.

    A terminal loan accepts no further mutation, not even one that keeps its
    status.
    """
    if current.is_terminal:
        raise StateError(
            f"this loan is already {current.value}",
            loan_id=loan_id,
            status=current.value
        )
    if not can_transition(current, target):
        raise StateError(
            f"cannot move loan from {current.value} to {target.value}",
            loan_id=loan_id,
            status=current.value
        )
    return target
