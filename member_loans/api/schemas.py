"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..loans import Loan, LoanBalance
from ..payments import Payment


class CreateLoanRequest(BaseModel):
    borrower_id: str
    principal: str = Field(..., description="Decimal amount as string")
    guarantor_id: Optional[str] = None
    interest_rate_percent: Optional[str] = Field(
        None, description="Interest per grace period in percent, defaults to configuration"
    )
    origination_date: Optional[date] = None
    grace_period_months: Optional[int] = None
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: Optional[date] = None
    mode: str = Field("cash", description="cash, transfer, check or mobile_money")
    notes: Optional[str] = None
    as_of: Optional[date] = None


class SettleRequest(BaseModel):
    mode: str = "cash"
    notes: Optional[str] = None
    as_of: Optional[date] = None


class ReconductRequest(BaseModel):
    new_due_date: Optional[date] = None
    as_of: Optional[date] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    as_of: Optional[date] = None


class OverdueScanRequest(BaseModel):
    as_of: Optional[date] = None


def loan_to_response(loan: Loan, balance: LoanBalance) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "borrower_id": loan.borrower_id,
        "guarantor_id": loan.guarantor_id,
        "principal": str(loan.principal),
        "interest_rate_percent": str(loan.interest_rate_percent),
        "origination_date": loan.origination_date.isoformat(),
        "due_date": loan.due_date.isoformat(),
        "grace_period_months": loan.grace_period_months,
        "reconduction_count": loan.reconduction_count,
        "status": loan.status.value,
        "total_due": str(balance.total_due),
        "total_paid": str(balance.total_paid),
        "remaining_due": str(balance.remaining_due),
        "notes": loan.notes,
        "closed_date": loan.closed_date.isoformat() if loan.closed_date else None,
        "cancellation_reason": loan.cancellation_reason
    }


def payment_to_response(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "loan_id": payment.loan_id,
        "amount": str(payment.amount),
        "payment_date": payment.payment_date.isoformat(),
        "mode": payment.mode.value,
        "notes": payment.notes
    }
