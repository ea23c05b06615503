"""
Module: billing_kernel.models.tab
Responsibility: ORM persistence for tabs and their line items.
Architecture position: Kernel > Models.  May import from db/ and domain/dtos
    (enums only).

Invariants enforced:
    - LineItem.total_price == round_money(quantity * unit_price), computed by
      the assignment service when the item is created.
    - LineItem.billing_group_id is NULL unless assignment_status is
      "assigned".

Audit relevance:
    Line item assignment changes are recorded as line_item_assignment audit
    events by the assignment service.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.domain.dtos import AssignmentStatus


class Tab(TrackedBase):
    """A running customer balance the merchant tracks before payment."""

    __tablename__ = "tabs"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")

    line_items: Mapped[list["LineItem"]] = relationship(
        back_populates="tab", order_by="LineItem.created_at"
    )

    def __repr__(self) -> str:
        return f"<Tab {self.id} {self.status}>"


class LineItem(TrackedBase):
    """One billable charge on a tab, optionally assigned to a billing group."""

    __tablename__ = "line_items"

    __table_args__ = (
        Index("idx_line_item_tab", "tab_id"),
        Index("idx_line_item_group", "billing_group_id"),
    )

    tab_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("tabs.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    total_price: Mapped[Decimal] = mapped_column(nullable=False)

    billing_group_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("billing_groups.id"), nullable=True
    )
    assignment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AssignmentStatus.UNASSIGNED.value
    )
    # Set while a require_approval rule is waiting on the merchant
    pending_billing_group_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("billing_groups.id"), nullable=True
    )
    pending_rule_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # "metadata" is reserved on declarative classes
    item_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    tab: Mapped[Tab] = relationship(back_populates="line_items")

    def __repr__(self) -> str:
        return f"<LineItem {self.description!r} {self.total_price}>"
