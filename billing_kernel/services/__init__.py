"""Write services. Each one flushes inside the caller's transaction."""

from billing_kernel.services.allocation_service import PaymentAllocationService
from billing_kernel.services.assignment_service import LineItemAssignmentService
from billing_kernel.services.audit_service import (
    AuditEventRecord,
    AuditSink,
    AuditStatistics,
    AuditTrailQuery,
    AuditTrailResult,
    BillingAuditService,
    InMemoryAuditSink,
    SqlAuditSink,
)
from billing_kernel.services.balance_tracker import BillingGroupBalanceTracker
from billing_kernel.services.billing_group_service import BILLING_GROUP_TEMPLATES, BillingGroupService
from billing_kernel.services.notifications import (
    InMemoryNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    RuleNotification,
)
from billing_kernel.services.payment_events import PaymentEventHandler
from billing_kernel.services.rule_service import BillingGroupRuleService
from billing_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditEventRecord",
    "AuditSink",
    "AuditStatistics",
    "AuditTrailQuery",
    "AuditTrailResult",
    "BILLING_GROUP_TEMPLATES",
    "BillingAuditService",
    "BillingGroupBalanceTracker",
    "BillingGroupRuleService",
    "BillingGroupService",
    "InMemoryAuditSink",
    "InMemoryNotificationSink",
    "LineItemAssignmentService",
    "LoggingNotificationSink",
    "NotificationSink",
    "PaymentAllocationService",
    "PaymentEventHandler",
    "RuleNotification",
    "SequenceService",
    "SqlAuditSink",
]
