"""
Module: billing_kernel.models.audit_event
Responsibility: ORM persistence for the billing audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners in
      db/immutability.py).
    - seq is strictly increasing and defines "newest first" ordering.

Audit relevance:
    AuditEvent IS the audit trail.  Billing group creation and closure, rule
    authoring, line item assignment, payment allocation and reversal each
    produce at least one row.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base


class AuditEntityType(str, Enum):
    BILLING_GROUP = "billing_group"
    BILLING_GROUP_RULE = "billing_group_rule"
    LINE_ITEM_ASSIGNMENT = "line_item_assignment"
    PAYMENT_ALLOCATION = "payment_allocation"


class AuditAction(str, Enum):
    """Types of auditable actions."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    OVERRIDE = "override"
    PENDING_APPROVAL = "pending_approval"
    ALLOCATED = "allocated"
    REVERSED = "reversed"


class AuditEvent(Base):
    """
    One immutable audit record.

    Contract:
        Rows are written only by SqlAuditSink and never updated or deleted.
        The live window is the newest ``retention_limit`` rows by seq; older
        rows stay in the table but fall out of queries.
    """

    __tablename__ = "billing_audit_events"

    __table_args__ = (
        Index("idx_billing_audit_entity", "entity_type", "entity_id"),
        Index("idx_billing_audit_action", "action"),
        Index("idx_billing_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"
