"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status

from .system import LoanSystem, get_loan_system
from .schemas import (
    CancelRequest, CreateLoanRequest, OverdueScanRequest, PaymentRequest,
    ReconductRequest, SettleRequest, loan_to_response, payment_to_response
)
from ..lifecycle import LoanStatus


router = APIRouter()


def _loan_response(system: LoanSystem, loan) -> dict:
    return loan_to_response(loan, system.registry.balance_of(loan))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Create a loan for a member"""
    loan = system.registry.create(
        borrower_id=request.borrower_id,
        principal=request.principal,
        guarantor_id=request.guarantor_id,
        rate_percent=request.interest_rate_percent,
        origination_date=request.origination_date,
        grace_period_months=request.grace_period_months,
        notes=request.notes
    )
    return _loan_response(system, loan)


@router.get("")
async def list_loans(
    status: Optional[str] = None,
    borrower_id: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """List loans, optionally filtered by status and borrower"""
    loan_status = None
    if status:
        try:
            loan_status = LoanStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown loan status: {status}")

    loans = system.registry.list_loans(status=loan_status, borrower_id=borrower_id)
    return {"loans": [_loan_response(system, loan) for loan in loans]}


@router.post("/overdue-scan")
async def run_overdue_scan(
    request: Optional[OverdueScanRequest] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Run one overdue scan; meant to be called by the scheduler"""
    as_of = request.as_of if request else None
    transitioned = system.scanner.tick(as_of)
    return {
        "marked_overdue": [loan.id for loan in transitioned],
        "count": len(transitioned)
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get loan details with its balance"""
    return _loan_response(system, system.registry.get_loan(loan_id))


@router.get("/{loan_id}/balance")
async def get_loan_balance(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Total due, total paid, remaining balance and status"""
    return system.registry.get_balance(loan_id).to_dict()


@router.get("/{loan_id}/payments")
async def get_loan_payments(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Payment history of a loan"""
    payments = system.ledger.get_payments(loan_id)
    return {"payments": [payment_to_response(p) for p in payments]}


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: str,
    request: PaymentRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Record a partial or final repayment"""
    loan = system.ledger.record_payment(
        loan_id=loan_id,
        amount=request.amount,
        payment_date=request.payment_date,
        mode=request.mode,
        notes=request.notes,
        now=request.as_of
    )
    return _loan_response(system, loan)


@router.post("/{loan_id}/settle")
async def settle_loan(
    loan_id: str,
    request: Optional[SettleRequest] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Mark a loan as fully repaid today"""
    request = request or SettleRequest()
    loan = system.ledger.settle_in_full(
        loan_id, now=request.as_of, mode=request.mode, notes=request.notes
    )
    return _loan_response(system, loan)


@router.post("/{loan_id}/reconduct")
async def reconduct_loan(
    loan_id: str,
    request: Optional[ReconductRequest] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Roll the loan over for another grace period"""
    request = request or ReconductRequest()
    loan = system.registry.reconduct(
        loan_id, new_due_date=request.new_due_date, now=request.as_of
    )
    return _loan_response(system, loan)


@router.post("/{loan_id}/cancel")
async def cancel_loan(
    loan_id: str,
    request: Optional[CancelRequest] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Cancel an open loan"""
    request = request or CancelRequest()
    loan = system.registry.cancel(loan_id, reason=request.reason, now=request.as_of)
    return _loan_response(system, loan)
