"""
Notifications raised by ``notify`` billing group rules.

A ``notify`` rule assigns the line item like ``auto_assign`` and also hands
a ``RuleNotification`` to the injected ``NotificationSink``.  Delivery
(email, push, webhook) belongs to the host application; the kernel ships
a logging sink and an in-memory sink.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from billing_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


@dataclass(frozen=True)
class RuleNotification:
    """A line item was routed by a rule whose action is ``notify``."""

    rule_id: str
    rule_name: str
    billing_group_id: str
    line_item_id: str
    tab_id: str
    amount: Decimal
    occurred_at: datetime


class NotificationSink(Protocol):
    def notify(self, notification: RuleNotification) -> None: ...


class LoggingNotificationSink:
    """Default sink: one structured log record per notification."""

    def notify(self, notification: RuleNotification) -> None:
        logger.info(
            "rule_notification",
            extra={
                "rule_id": notification.rule_id,
                "rule_name": notification.rule_name,
                "billing_group_id": notification.billing_group_id,
                "line_item_id": notification.line_item_id,
                "tab_id": notification.tab_id,
                "amount": str(notification.amount),
            },
        )


class InMemoryNotificationSink:
    """Collects notifications in a list."""

    def __init__(self) -> None:
        self.notifications: list[RuleNotification] = []

    def notify(self, notification: RuleNotification) -> None:
        self.notifications.append(notification)
