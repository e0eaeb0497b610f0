"""
Reporting endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .system import LoanSystem, get_loan_system


router = APIRouter()


@router.get("/portfolio")
async def get_portfolio_summary(
    as_of: Optional[date] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Loan book totals for the dashboard"""
    return system.reporting.portfolio_summary(as_of).to_dict()
