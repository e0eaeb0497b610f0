"""
Loan system container and FastAPI dependency
"""

from datetime import date
from typing import Callable, Optional

from ..config import MemberLoansConfig, get_config
from ..loans import LoanRegistry, MemberDirectory
from ..notifications import NotificationGateway, create_gateway
from ..overdue import OverdueScanner
from ..payments import PaymentLedger
from ..reporting import LoanReporting
from ..storage import StorageInterface, create_storage


class LoanSystem:
    """Loan engine with all components wired to one storage backend"""

    def __init__(
        self,
        config: Optional[MemberLoansConfig] = None,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[NotificationGateway] = None,
        member_directory: Optional[MemberDirectory] = None,
        clock: Callable[[], date] = date.today
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.gateway = gateway or create_gateway(self.config)

        self.registry = LoanRegistry(
            self.storage, self.config, member_directory=member_directory, clock=clock
        )
        self.ledger = PaymentLedger(self.storage, self.registry)
        self.scanner = OverdueScanner(self.registry, self.gateway)
        self.reporting = LoanReporting(self.registry)

    def close(self) -> None:
        self.storage.close()


_loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    """Dependency returning the process-wide loan system, built on first use"""
    global _loan_system
    if _loan_system is None:
        _loan_system = LoanSystem()
    return _loan_system
