"""
Module: billing_kernel.models.billing_group
Responsibility: ORM persistence for billing groups (per-payer sub-ledgers of
    a tab) and the automation rules that route line items into them.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - current_balance >= 0 (CHECK constraint; the balance tracker clamps).
    - current_balance is only written by BillingGroupBalanceTracker, inside
      the transaction that computed it.
    - Closing a group is a soft delete: status becomes "closed", the row
      stays so allocation history keeps resolving.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.domain.dtos import GroupStatus, GroupType
from billing_kernel.domain.rules import DEFAULT_RULE_PRIORITY, RuleAction


class BillingGroup(TrackedBase):
    """
    One payer's share of a tab.

    Guarantees:
        - deposit_applied never exceeds deposit_amount.
        - credit_limit is only meaningful for group_type == "credit".
    """

    __tablename__ = "billing_groups"

    __table_args__ = (
        Index("idx_billing_group_tab", "tab_id"),
        CheckConstraint("current_balance >= 0", name="ck_billing_group_balance_non_negative"),
    )

    tab_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("tabs.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    group_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=GroupType.STANDARD.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=GroupStatus.ACTIVE.value
    )
    payer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    current_balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    deposit_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    deposit_applied: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    credit_limit: Mapped[Decimal | None] = mapped_column(nullable=True)

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == GroupStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<BillingGroup {self.name!r} balance={self.current_balance}>"


class BillingGroupRuleModel(TrackedBase):
    """
    Automation rule routing matching line items to a billing group.

    created_at is stamped from the injected clock (not the server default)
    and creation_seq from the rule sequence; together they break priority
    ties in the rule engine, creation_seq when timestamps collide.
    """

    __tablename__ = "billing_group_rules"

    __table_args__ = (
        Index("idx_rule_group", "billing_group_id"),
        Index("idx_rule_priority", "priority", "created_at", "creation_seq"),
    )

    billing_group_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("billing_groups.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_RULE_PRIORITY)
    action: Mapped[str] = mapped_column(
        String(30), nullable=False, default=RuleAction.AUTO_ASSIGN.value
    )
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    creation_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<BillingGroupRule {self.name!r} priority={self.priority} {self.action}>"
