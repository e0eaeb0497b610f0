"""
Member Loans

Loan lifecycle and interest accrual engine for an association's members:
compounding interest across reconductions, partial repayments, one open loan
per borrower, and a scheduled overdue scan that drives notifications.
"""

__version__ = "1.0.0"
