"""
Member loan history endpoints
"""

from fastapi import APIRouter, Depends

from .system import LoanSystem, get_loan_system
from .schemas import loan_to_response


router = APIRouter()


@router.get("/{member_id}/loans")
async def get_member_loans(
    member_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Loans a member took out and loans they guaranteed"""
    history = system.registry.loans_for_member(member_id)
    return {
        "member_id": member_id,
        "as_borrower": [
            loan_to_response(loan, system.registry.balance_of(loan))
            for loan in history["as_borrower"]
        ],
        "as_guarantor": [
            loan_to_response(loan, system.registry.balance_of(loan))
            for loan in history["as_guarantor"]
        ]
    }
