"""ORM models. Importing this package registers every table on Base.metadata."""

from billing_kernel.models.audit_event import AuditAction, AuditEntityType, AuditEvent
from billing_kernel.models.billing_group import BillingGroup, BillingGroupRuleModel
from billing_kernel.models.payment import Payment, PaymentAllocation, PaymentAllocationBatch
from billing_kernel.models.sequence import SequenceCounter
from billing_kernel.models.tab import LineItem, Tab

__all__ = [
    "AuditAction",
    "AuditEntityType",
    "AuditEvent",
    "BillingGroup",
    "BillingGroupRuleModel",
    "LineItem",
    "Payment",
    "PaymentAllocation",
    "PaymentAllocationBatch",
    "SequenceCounter",
    "Tab",
]
