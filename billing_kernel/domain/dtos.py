"""
DTOs -- Immutable data transfer objects for the billing kernel.

Responsibility:
    Snapshots of tabs, line items and billing groups handed to the pure
    engines, and the outcome records returned by services and selectors.

Architecture position:
    Kernel > Domain -- pure, zero I/O. ``from_model()`` converters exist
    at the persistence boundary and are only called from services and
    selectors; engines never see ORM entities.

Invariants enforced:
    - Money amounts are Decimal rounded to 2 places at the boundary.
    - Collections are tuples so outcomes cannot be mutated after return.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from billing_kernel.models.billing_group import BillingGroup as BillingGroupModel
    from billing_kernel.models.tab import LineItem as LineItemModel


class GroupType(str, Enum):
    STANDARD = "standard"
    CORPORATE = "corporate"
    DEPOSIT = "deposit"
    CREDIT = "credit"


class GroupStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class AssignmentStatus(str, Enum):
    """Where a line item stands with respect to billing group assignment."""

    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    PENDING_APPROVAL = "pending_approval"


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class LineItemSnapshot:
    """What the rule engine knows about a line item."""

    line_item_id: str
    tab_id: str
    description: str
    total_price: Decimal
    category: str | None = None
    quantity: Decimal = Decimal("1")
    unit_price: Decimal | None = None
    billing_group_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    assignment_status: AssignmentStatus = AssignmentStatus.UNASSIGNED

    @classmethod
    def from_model(cls, item: LineItemModel) -> LineItemSnapshot:
        return cls(
            line_item_id=str(item.id),
            tab_id=str(item.tab_id),
            description=item.description,
            total_price=item.total_price,
            category=item.category,
            quantity=item.quantity,
            unit_price=item.unit_price,
            billing_group_id=str(item.billing_group_id) if item.billing_group_id else None,
            metadata=_freeze(item.item_metadata),
            assignment_status=AssignmentStatus(item.assignment_status),
        )


@dataclass(frozen=True)
class BillingGroupSnapshot:
    billing_group_id: str
    tab_id: str
    name: str
    group_type: GroupType
    status: GroupStatus
    current_balance: Decimal
    deposit_amount: Decimal | None = None
    deposit_applied: Decimal = Decimal("0")
    credit_limit: Decimal | None = None
    payer_email: str | None = None

    @property
    def deposit_remaining(self) -> Decimal:
        if self.deposit_amount is None:
            return Decimal("0")
        return max(self.deposit_amount - self.deposit_applied, Decimal("0"))

    @classmethod
    def from_model(cls, group: BillingGroupModel) -> BillingGroupSnapshot:
        return cls(
            billing_group_id=str(group.id),
            tab_id=str(group.tab_id),
            name=group.name,
            group_type=GroupType(group.group_type),
            status=GroupStatus(group.status),
            current_balance=group.current_balance,
            deposit_amount=group.deposit_amount,
            deposit_applied=group.deposit_applied,
            credit_limit=group.credit_limit,
            payer_email=group.payer_email,
        )


@dataclass(frozen=True)
class GroupAllocation:
    """Amount of one payment credited to one billing group."""

    billing_group_id: str
    amount: Decimal

    def to_metadata(self) -> dict[str, str]:
        return {"billingGroupId": self.billing_group_id, "amount": f"{self.amount:.2f}"}

    @classmethod
    def from_metadata(cls, entry: Mapping[str, Any]) -> GroupAllocation:
        return cls(
            billing_group_id=str(entry["billingGroupId"]),
            amount=Decimal(str(entry["amount"])),
        )


@dataclass(frozen=True)
class AllocationOutcome:
    payment_id: str
    tab_id: str
    method: str
    allocations: tuple[GroupAllocation, ...]
    updated_groups: tuple[BillingGroupSnapshot, ...]
    allocated_at: datetime

    @property
    def total_allocated(self) -> Decimal:
        return sum((a.amount for a in self.allocations), Decimal("0"))


@dataclass(frozen=True)
class ReversalOutcome:
    payment_id: str
    restored: tuple[GroupAllocation, ...]
    updated_groups: tuple[BillingGroupSnapshot, ...]
    reversed_at: datetime


@dataclass(frozen=True)
class TabPaymentAllocation:
    """One allocated payment on a tab, as read back from payment metadata."""

    payment_id: str
    allocation_method: str
    allocations: tuple[GroupAllocation, ...]
    allocated_at: str | None = None
    is_reversed: bool = False


@dataclass(frozen=True)
class AssignmentOutcome:
    """Result of running the rule engine (or a manual action) for one item."""

    line_item_id: str
    status: AssignmentStatus
    billing_group_id: str | None = None
    rule_id: str | None = None
    action: str | None = None


@dataclass(frozen=True)
class BillingGroupSummary:
    group: BillingGroupSnapshot
    line_items: tuple[LineItemSnapshot, ...]
    item_total: Decimal
    deposit_remaining: Decimal


@dataclass(frozen=True)
class TabBillingSummary:
    tab_id: str
    groups: tuple[BillingGroupSummary, ...]
    unassigned_items: tuple[LineItemSnapshot, ...]
    total_amount: Decimal
