"""
Pure domain layer.

Value objects, rule conditions and DTOs with NO dependencies on the ORM,
the database, the clock (other than the Clock interface) or I/O.
"""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from billing_kernel.domain.currency import CurrencyInfo, CurrencyRegistry
from billing_kernel.domain.dtos import (
    AllocationOutcome,
    AssignmentOutcome,
    AssignmentStatus,
    BillingGroupSnapshot,
    BillingGroupSummary,
    GroupAllocation,
    GroupStatus,
    GroupType,
    LineItemSnapshot,
    PaymentStatus,
    ReversalOutcome,
    TabBillingSummary,
    TabPaymentAllocation,
)
from billing_kernel.domain.rules import (
    DEFAULT_RULE_PRIORITY,
    AmountRange,
    BillingGroupRuleSpec,
    RuleAction,
    RuleConditions,
    TimeWindow,
)
from billing_kernel.domain.values import Currency, Money

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CurrencyInfo",
    "CurrencyRegistry",
    "Currency",
    "Money",
    "DEFAULT_RULE_PRIORITY",
    "AmountRange",
    "TimeWindow",
    "RuleAction",
    "RuleConditions",
    "BillingGroupRuleSpec",
    "AllocationOutcome",
    "AssignmentOutcome",
    "AssignmentStatus",
    "BillingGroupSnapshot",
    "BillingGroupSummary",
    "GroupAllocation",
    "GroupStatus",
    "GroupType",
    "LineItemSnapshot",
    "PaymentStatus",
    "ReversalOutcome",
    "TabBillingSummary",
    "TabPaymentAllocation",
]
