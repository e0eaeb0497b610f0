"""
Loan Error Taxonomy

Domain errors raised by the loan engine. All of them are recoverable by the
caller and carry enough context (loan id, current status, remaining balance)
to correct the input or retry.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LoanError(ValueError):
    """Base class for all loan engine errors"""

    kind = "loan_error"

    def __init__(
        self,
        message: str,
        loan_id: Optional[str] = None,
        status: Optional[str] = None,
        remaining_due: Optional[Decimal] = None,
        **context: Any
    ):
        super().__init__(message)
        self.message = message
        self.loan_id = loan_id
        self.status = status
        self.remaining_due = remaining_due
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the API boundary"""
        result: Dict[str, Any] = {"error": self.kind, "detail": self.message}
        if self.loan_id:
            result["loan_id"] = self.loan_id
        if self.status:
            result["status"] = self.status
        if self.remaining_due is not None:
            result["remaining_due"] = str(self.remaining_due)
        for key, value in self.context.items():
            result[key] = str(value) if isinstance(value, Decimal) else value
        return result


class ValidationError(LoanError):
    """Malformed or out-of-range input"""
    kind = "validation_error"


class NotFoundError(LoanError):
    """Unknown loan id"""
    kind = "not_found"


class ConflictError(LoanError):
    """Borrower already holds a non-terminal loan"""
    kind = "conflict"


class ConcurrentModificationError(ConflictError):
    """Loan changed between read and write; the caller should retry"""
    kind = "concurrent_modification"


class OverpaymentError(LoanError):
    """Payment exceeds the remaining balance"""
    kind = "overpayment"


class StateError(LoanError):
    """Operation not allowed in the loan's current status"""
    kind = "invalid_state"
