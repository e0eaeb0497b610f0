"""
Notification Gateway Module

Outbound side of the overdue scan. The engine only emits notification
requests; templating, channel selection and retries belong to whatever sits
behind the gateway.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

import requests

from .config import MemberLoansConfig
from .logging_config import log_action


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverdueNotice:
    """Request to tell a borrower (and guarantor) that a loan is overdue"""
    loan_id: str
    borrower_id: str
    remaining_due: Decimal
    due_date: date
    guarantor_id: Optional[str] = None

    @property
    def recipients(self):
        """Members to notify: the borrower, then the guarantor if any"""
        if self.guarantor_id:
            return [self.borrower_id, self.guarantor_id]
        return [self.borrower_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "loan_overdue",
            "loan_id": self.loan_id,
            "borrower_id": self.borrower_id,
            "guarantor_id": self.guarantor_id,
            "remaining_due": str(self.remaining_due),
            "due_date": self.due_date.isoformat()
        }


class NotificationGateway(ABC):
    """Abstract sink for overdue notices"""

    @abstractmethod
    def send(self, notice: OverdueNotice) -> bool:
        """Hand a notice over for delivery. Returns True if it was accepted."""
        pass


class LogNotificationGateway(NotificationGateway):
    """Writes notices to the log instead of delivering them"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def send(self, notice: OverdueNotice) -> bool:
        log_action(
            self.logger, "info",
            f"Loan {notice.loan_id} overdue since {notice.due_date.isoformat()}, "
            f"remaining {notice.remaining_due}",
            action="notification.overdue", resource=notice.loan_id,
            extra=notice.to_dict()
        )
        return True


class WebhookNotificationGateway(NotificationGateway):
    """Posts notices as JSON to an external notification service"""

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, notice: OverdueNotice) -> bool:
        """POST the notice; any non-2xx answer or transport error counts as a failure"""
        try:
            response = self.session.post(
                self.url,
                json=notice.to_dict(),
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Webhook delivery failed for loan {notice.loan_id}: {e}")
            return False
        return True


def create_gateway(config: MemberLoansConfig) -> NotificationGateway:
    """Webhook gateway when a URL is configured, log gateway otherwise"""
    if config.notification_webhook_url:
        return WebhookNotificationGateway(
            config.notification_webhook_url,
            timeout=config.notification_timeout
        )
    return LogNotificationGateway()
