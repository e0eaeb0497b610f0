"""
Payment Ledger Module

Records repayments against member loans. Payments are append-only; the paid
total and remaining balance are always recomputed from them. A payment may
never take the paid total above the amount due.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import logging
import uuid

from .accrual import Number, quantize_amount, to_decimal
from .errors import OverpaymentError, StateError, ValidationError
from .lifecycle import LoanStatus, check_transition
from .loans import Loan, LoanRegistry
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)


class PaymentMode(Enum):
    """How a repayment was made"""
    CASH = "cash"
    TRANSFER = "transfer"
    CHECK = "check"
    MOBILE_MONEY = "mobile_money"


@dataclass
class Payment(StorageRecord):
    """Record of a loan repayment"""
    loan_id: str
    amount: Decimal
    payment_date: date
    mode: PaymentMode = PaymentMode.CASH
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['payment_date'] = date.fromisoformat(data['payment_date'])
        data['mode'] = PaymentMode(data['mode'])
        return super().from_dict(data)


class PaymentLedger:
    """
    Appends payments to loans and keeps loan status in step with them
    """

    def __init__(
        self,
        storage: StorageInterface,
        registry: LoanRegistry,
        clock: Optional[Callable[[], date]] = None
    ):
        self.storage = storage
        self.registry = registry
        self.clock = clock or registry.clock
        self.payments_table = registry.payments_table
        self.precision = registry.precision

    def record_payment(
        self,
        loan_id: str,
        amount: Number,
        payment_date: Optional[date] = None,
        mode: Union[PaymentMode, str] = PaymentMode.CASH,
        notes: Optional[str] = None,
        now: Optional[date] = None
    ) -> Loan:
        """
        Record a (possibly partial) repayment

        Args:
            loan_id: Loan being repaid
            amount: Amount paid, strictly positive
            payment_date: Date of payment (defaults to ``now``)
            mode: Payment mode
            notes: Free text
            now: Evaluation date for the status (defaults to today)

        Returns:
            The loan with its re-derived status

        Raises:
            ValidationError: non-positive amount, unknown mode, date before origination
            StateError: loan settled or cancelled
            OverpaymentError: amount above the remaining balance; nothing is recorded
        """
        amount = self._validate_amount(amount)
        mode = self._validate_mode(mode)
        now = now or self.clock()
        payment_date = payment_date or now

        with self.storage.atomic():
            loan = self.registry.get_loan(loan_id)
            self._ensure_payable(loan)
            if payment_date < loan.origination_date:
                raise ValidationError(
                    "payment date cannot precede the loan date",
                    loan_id=loan.id, status=loan.status.value,
                    origination_date=loan.origination_date.isoformat()
                )

            balance = self.registry.balance_of(loan)
            if amount > balance.remaining_due:
                raise OverpaymentError(
                    f"amount exceeds remaining balance of {balance.remaining_due}",
                    loan_id=loan.id,
                    status=loan.status.value,
                    remaining_due=balance.remaining_due,
                    amount=amount
                )

            payment = self._append_payment(loan, amount, payment_date, mode, notes)
            previous_status = loan.status
            self.registry._apply_derived_status(loan, now)
            self.registry._save_loan(loan)

        log_action(
            logger, "info", "Loan payment recorded",
            action="loan.payment", resource=loan.id,
            extra={
                "payment_id": payment.id,
                "amount": str(amount),
                "mode": mode.value,
                "remaining_due": str(balance.remaining_due - amount),
                "previous_status": previous_status.value,
                "status": loan.status.value
            }
        )
        return loan

    def settle_in_full(
        self,
        loan_id: str,
        now: Optional[date] = None,
        mode: Union[PaymentMode, str] = PaymentMode.CASH,
        notes: Optional[str] = None
    ) -> Loan:
        """Pay the remaining balance today and mark the loan settled"""
        mode = self._validate_mode(mode)
        now = now or self.clock()

        with self.storage.atomic():
            loan = self.registry.get_loan(loan_id)
            self._ensure_payable(loan)

            remaining = self.registry.balance_of(loan).remaining_due
            if remaining > 0:
                self._append_payment(loan, remaining, now, mode, notes or "Settled in full")

            previous_status = loan.status
            loan.status = check_transition(loan.status, LoanStatus.SETTLED, loan.id)
            loan.closed_date = now
            self.registry._save_loan(loan)

        log_action(
            logger, "info", "Loan settled in full",
            action="loan.settle", resource=loan.id,
            extra={
                "amount": str(remaining),
                "mode": mode.value,
                "previous_status": previous_status.value
            }
        )
        return loan

    def get_payments(self, loan_id: str) -> List[Payment]:
        """Payment history of a loan, oldest first"""
        self.registry.get_loan(loan_id)
        payments = [
            Payment.from_dict(data)
            for data in self.storage.find(self.payments_table, {'loan_id': loan_id})
        ]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def total_paid(self, loan_id: str) -> Decimal:
        return self.registry.total_paid(loan_id)

    def remaining_due(self, loan_id: str) -> Decimal:
        return self.registry.get_balance(loan_id).remaining_due

    def _append_payment(
        self,
        loan: Loan,
        amount: Decimal,
        payment_date: date,
        mode: PaymentMode,
        notes: Optional[str]
    ) -> Payment:
        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=amount,
            payment_date=payment_date,
            mode=mode,
            notes=notes
        )
        self.storage.insert(self.payments_table, payment.id, payment.to_dict())
        return payment

    def _ensure_payable(self, loan: Loan) -> None:
        if loan.status.is_terminal:
            raise StateError(
                f"this loan is already {loan.status.value}",
                loan_id=loan.id, status=loan.status.value
            )

    def _validate_amount(self, amount: Number) -> Decimal:
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise ValidationError("amount must be positive", amount=amount)
        if quantize_amount(amount, self.precision) != amount:
            raise ValidationError(
                f"amount has more than {self.precision} decimal places", amount=amount
            )
        return amount

    @staticmethod
    def _validate_mode(mode: Union[PaymentMode, str]) -> PaymentMode:
        if isinstance(mode, PaymentMode):
            return mode
        try:
            return PaymentMode(mode)
        except ValueError:
            raise ValidationError(f"unknown payment mode: {mode}")
