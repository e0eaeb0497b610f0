"""
Loan Reporting Module

Portfolio figures for the loans dashboard: how much was lent, how much is
owed, how much came back and how much is late.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from .lifecycle import LoanStatus
from .loans import LoanRegistry


@dataclass
class PortfolioSummary:
    """Aggregate view of all loans as of a date"""
    as_of: date
    loan_count: int = 0
    count_by_status: Dict[str, int] = field(default_factory=dict)
    total_principal: Decimal = Decimal('0')
    total_due: Decimal = Decimal('0')
    total_interest: Decimal = Decimal('0')
    total_paid: Decimal = Decimal('0')
    total_outstanding: Decimal = Decimal('0')
    overdue_outstanding: Decimal = Decimal('0')
    overdue_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "loan_count": self.loan_count,
            "count_by_status": dict(self.count_by_status),
            "total_principal": str(self.total_principal),
            "total_due": str(self.total_due),
            "total_interest": str(self.total_interest),
            "total_paid": str(self.total_paid),
            "total_outstanding": str(self.total_outstanding),
            "overdue_outstanding": str(self.overdue_outstanding),
            "overdue_count": self.overdue_count
        }


class LoanReporting:
    """Read-only reports over the loan registry"""

    def __init__(self, registry: LoanRegistry):
        self.registry = registry

    def portfolio_summary(self, now: Optional[date] = None) -> PortfolioSummary:
        """
        Summarize the loan book.

        Cancelled loans count towards the status breakdown only. A loan is
        counted as late when it is overdue, or when it is still open with a
        due date before ``now`` but the scanner has not run yet.
        """
        now = now or self.registry.clock()
        summary = PortfolioSummary(
            as_of=now,
            count_by_status={status.value: 0 for status in LoanStatus}
        )

        for loan in self.registry.list_loans():
            summary.loan_count += 1
            summary.count_by_status[loan.status.value] += 1
            if loan.status == LoanStatus.CANCELLED:
                continue

            balance = self.registry.balance_of(loan)
            summary.total_principal += loan.principal
            summary.total_due += balance.total_due
            summary.total_interest += balance.total_due - loan.principal
            summary.total_paid += balance.total_paid

            if loan.is_open:
                summary.total_outstanding += balance.remaining_due
                if loan.status == LoanStatus.OVERDUE or loan.due_date < now:
                    summary.overdue_outstanding += balance.remaining_due
                    summary.overdue_count += 1

        return summary
