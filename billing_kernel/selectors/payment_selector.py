"""
Module: billing_kernel.selectors.payment_selector
Responsibility: Read model for the payment allocations of a tab, as
    recorded in payment metadata.
Architecture position: Kernel > Selectors.  Read-only; returns DTOs.

Invariants enforced:
    - Payments without allocation metadata are omitted, not returned as
      empty entries.
    - Entries come back in payment creation order.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select

from billing_kernel.domain.dtos import GroupAllocation, TabPaymentAllocation
from billing_kernel.models.payment import Payment
from billing_kernel.selectors.base import BaseSelector

ALLOCATIONS_KEY = "billingGroupAllocations"
METHOD_KEY = "allocationMethod"
ALLOCATED_AT_KEY = "allocatedAt"
REVERSED_AT_KEY = "allocationReversedAt"


def allocations_from_metadata(metadata: dict | None) -> tuple[GroupAllocation, ...]:
    entries = (metadata or {}).get(ALLOCATIONS_KEY) or []
    return tuple(GroupAllocation.from_metadata(e) for e in entries)


class PaymentSelector(BaseSelector[Payment]):
    """Read-only queries over payments and their allocations."""

    def tab_payment_allocations(self, tab_id: Any) -> list[TabPaymentAllocation]:
        try:
            key = tab_id if isinstance(tab_id, UUID) else UUID(str(tab_id))
        except ValueError:
            return []

        payments = self.session.execute(
            select(Payment)
            .where(Payment.tab_id == key)
            .order_by(Payment.created_at, Payment.id)
        ).scalars().all()

        result = []
        for payment in payments:
            metadata = payment.payment_metadata or {}
            allocations = allocations_from_metadata(metadata)
            if not allocations:
                continue
            result.append(TabPaymentAllocation(
                payment_id=str(payment.id),
                allocation_method=metadata.get(METHOD_KEY, ""),
                allocations=allocations,
                allocated_at=metadata.get(ALLOCATED_AT_KEY),
                is_reversed=bool(metadata.get(REVERSED_AT_KEY)),
            ))
        return result

