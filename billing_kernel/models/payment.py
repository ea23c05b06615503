"""
Module: billing_kernel.models.payment
Responsibility: ORM persistence for payments and for the allocation of a
    payment across billing groups.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - At most one PaymentAllocationBatch per payment (UNIQUE payment_id), so
      a payment can never be allocated twice, even by concurrent callers.
    - sum(PaymentAllocation.amount) == batch.total_amount == payment.amount.
    - Allocation rows are append-only; reversal stamps reversed_at and never
      deletes (see db/immutability.py).
    - A succeeded payment only changes through allocation metadata and the
      refunded transition.

Failure modes:
    - IntegrityError on a second batch for the same payment; the allocation
      service maps it to PaymentAlreadyAllocatedError.
    - ImmutabilityViolationError on UPDATE of an allocation amount or on
      DELETE of an allocation row.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import Base, TrackedBase, UUIDString
from billing_kernel.domain.dtos import PaymentStatus


class Payment(TrackedBase):
    """A payment collected against a tab by the payment processor."""

    __tablename__ = "payments"

    __table_args__ = (Index("idx_payment_tab", "tab_id"),)

    tab_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("tabs.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    processor: Mapped[str | None] = mapped_column(String(50), nullable=True)
    processor_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Replace the dict to change it; JSON columns do not track in-place edits
    payment_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    @property
    def is_settled(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED.value

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.amount} {self.status}>"


class PaymentAllocationBatch(Base):
    """
    The single allocation decision for one payment.

    Guarantees:
        - payment_id is unique: the idempotency guard for allocate().
        - reversed_at is NULL until reverse_payment_allocation() runs.
    """

    __tablename__ = "payment_allocation_batches"

    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_allocation_batch_payment"),
        Index("idx_allocation_batch_tab", "tab_id"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("payments.id"), nullable=False
    )
    tab_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("tabs.id"), nullable=False
    )
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    allocated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    lines: Mapped[list["PaymentAllocation"]] = relationship(
        back_populates="batch", order_by="PaymentAllocation.line_no"
    )

    @property
    def is_reversed(self) -> bool:
        return self.reversed_at is not None


class PaymentAllocation(Base):
    """Amount of a payment credited to one billing group."""

    __tablename__ = "payment_allocations"

    __table_args__ = (
        Index("idx_allocation_payment", "payment_id"),
        Index("idx_allocation_group", "billing_group_id"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("payment_allocation_batches.id"), nullable=False
    )
    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("payments.id"), nullable=False
    )
    billing_group_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("billing_groups.id"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    batch: Mapped[PaymentAllocationBatch] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return f"<PaymentAllocation {self.billing_group_id} {self.amount}>"
