"""
BillingGroupService -- billing group lifecycle on a tab.

Responsibility:
    Creates billing groups (one at a time or from a template), updates
    their descriptive fields, applies deposits and closes them.

Architecture position:
    Kernel > Services.  Balance changes go through
    BillingGroupBalanceTracker; every change is recorded through
    BillingAuditService.

Invariants enforced:
    - A group always belongs to an existing tab.
    - Closing is a soft delete: status becomes ``closed`` and the row is
      kept so historical allocations still resolve.  Each assigned line
      item is unassigned, or moved to another active group of the same
      tab when one is given.  Approvals pending on the group are declined.

Failure modes:
    - TabNotFoundError, BillingGroupNotFoundError.
    - BillingGroupClosedError when closing twice or moving items into a
      closed group.
    - ValidationError on an unknown group type or template, or on a
      target group from a different tab.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.db.types import round_money
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.dtos import AssignmentStatus, GroupStatus, GroupType
from billing_kernel.exceptions import (
    BillingGroupClosedError,
    BillingGroupNotFoundError,
    TabNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.audit_event import AuditAction, AuditEntityType
from billing_kernel.models.billing_group import BillingGroup, BillingGroupRuleModel
from billing_kernel.models.tab import LineItem, Tab
from billing_kernel.services.audit_service import AuditTrailResult, BillingAuditService, SqlAuditSink
from billing_kernel.services.balance_tracker import BillingGroupBalanceTracker
from billing_kernel.services.base import BaseService

logger = get_logger("services.billing_group")

# template name -> ((group name, group type), ...)
BILLING_GROUP_TEMPLATES: Mapping[str, tuple[tuple[str, GroupType], ...]] = {
    "hotel": (
        ("Room Charges", GroupType.STANDARD),
        ("Restaurant & Bar", GroupType.STANDARD),
        ("Spa & Activities", GroupType.STANDARD),
        ("Incidentals", GroupType.STANDARD),
    ),
    "restaurant": (
        ("Food", GroupType.STANDARD),
        ("Beverages", GroupType.STANDARD),
        ("Service & Tips", GroupType.STANDARD),
    ),
    "corporate": (
        ("Business Expenses", GroupType.CORPORATE),
        ("Personal Expenses", GroupType.STANDARD),
    ),
    "default": (
        ("General", GroupType.STANDARD),
    ),
}

_UPDATABLE_FIELDS = ("name", "payer_email", "credit_limit", "deposit_amount")


def _group_type(value: GroupType | str) -> GroupType:
    try:
        return GroupType(value)
    except ValueError:
        raise ValidationError(f"Unknown billing group type: {value!r}", field="group_type") from None


class BillingGroupService(BaseService[BillingGroup]):
    """
    Billing group lifecycle.

    Non-goals:
        - Does NOT route line items (LineItemAssignmentService does).
        - Does NOT allocate payments.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        audit: BillingAuditService | None = None,
        balance_tracker: BillingGroupBalanceTracker | None = None,
    ):
        super().__init__(session, clock)
        self._audit = audit or BillingAuditService(SqlAuditSink(session), self._clock)
        self._balances = balance_tracker or BillingGroupBalanceTracker(session, self._clock)

    def get_billing_group(self, billing_group_id: Any, for_update: bool = False) -> BillingGroup:
        return self._get_or_raise(
            BillingGroup, billing_group_id, BillingGroupNotFoundError, for_update=for_update
        )

    def create_billing_group(
        self,
        tab_id: Any,
        name: str,
        group_type: GroupType | str = GroupType.STANDARD,
        payer_email: str | None = None,
        credit_limit: Decimal | None = None,
        deposit_amount: Decimal | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> BillingGroup:
        tab = self._get_or_raise(Tab, tab_id, TabNotFoundError)
        if not name or not name.strip():
            raise ValidationError("Billing group name is required", field="name")
        kind = _group_type(group_type)

        group = BillingGroup(
            tab_id=tab.id,
            name=name.strip(),
            group_type=kind.value,
            status=GroupStatus.ACTIVE.value,
            payer_email=payer_email,
            current_balance=round_money(0),
            deposit_amount=round_money(deposit_amount) if deposit_amount is not None else None,
            deposit_applied=round_money(0),
            credit_limit=round_money(credit_limit) if credit_limit is not None else None,
        )
        self.session.add(group)
        self.session.flush()

        self._audit.record_billing_group_created(group, user_id=user_id, user_email=user_email)
        logger.info(
            "billing_group_created",
            extra={"billing_group_id": str(group.id), "tab_id": str(tab.id), "group_type": kind.value},
        )
        return group

    def enable_billing_groups(
        self,
        tab_id: Any,
        template: str | None = None,
        custom_groups: Iterable[tuple[str, GroupType | str]] | None = None,
        user_id: str | None = None,
    ) -> list[BillingGroup]:
        """
        Create the starting billing groups of a tab.

        ``custom_groups`` (name, type) pairs win over ``template``; with
        neither, a single "General" group is created.
        """
        if custom_groups is not None:
            definitions = [(name, _group_type(kind)) for name, kind in custom_groups]
        else:
            key = template or "default"
            if key not in BILLING_GROUP_TEMPLATES:
                raise ValidationError(f"Unknown billing group template: {template!r}", field="template")
            definitions = list(BILLING_GROUP_TEMPLATES[key])

        groups = [
            self.create_billing_group(tab_id, name, kind, user_id=user_id)
            for name, kind in definitions
        ]
        logger.info(
            "billing_groups_enabled",
            extra={"tab_id": str(tab_id), "template": template, "groups_created": len(groups)},
        )
        return groups

    def update_billing_group(
        self,
        billing_group_id: Any,
        user_id: str | None = None,
        **updates: Any,
    ) -> BillingGroup:
        unknown = set(updates) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update billing group fields: {sorted(unknown)}")

        group = self.get_billing_group(billing_group_id, for_update=True)
        if not group.is_active:
            raise BillingGroupClosedError(str(group.id))

        changes: dict[str, dict[str, Any]] = {}
        for key, value in updates.items():
            if key in ("credit_limit", "deposit_amount") and value is not None:
                value = round_money(value)
            old = getattr(group, key)
            if old != value:
                changes[key] = {"from": old, "to": value}
                setattr(group, key, value)
        self.session.flush()

        if changes:
            self._audit.record_billing_group_updated(group.id, changes, user_id=user_id)
        return group

    def apply_deposit(self, billing_group_id: Any, amount: Decimal | None = None,
                      user_id: str | None = None) -> Decimal:
        group = self.get_billing_group(billing_group_id, for_update=True)
        before = group.deposit_applied
        applied = self._balances.apply_deposit(group, amount)
        self._audit.record_billing_group_updated(
            group.id,
            {"depositApplied": {"from": before, "to": group.deposit_applied}},
            user_id=user_id,
            metadata={"tabId": str(group.tab_id), "amountApplied": applied},
        )
        return applied

    def close_billing_group(
        self,
        billing_group_id: Any,
        move_line_items_to: Any = None,
        user_id: str | None = None,
    ) -> BillingGroup:
        """
        Close a group, unassigning its items or moving them to
        ``move_line_items_to``.

        Raises:
            BillingGroupClosedError: the group (or the target) is closed.
            ValidationError: the target is the group itself or on another tab.
        """
        group = self.get_billing_group(billing_group_id, for_update=True)
        if not group.is_active:
            raise BillingGroupClosedError(str(group.id))

        target = None
        if move_line_items_to is not None:
            target = self.get_billing_group(move_line_items_to, for_update=True)
            if target.id == group.id:
                raise ValidationError("Cannot move line items into the group being closed",
                                      field="move_line_items_to")
            if target.tab_id != group.tab_id:
                raise ValidationError("Target billing group belongs to a different tab",
                                      field="move_line_items_to")
            if not target.is_active:
                raise BillingGroupClosedError(str(target.id))

        items = self.session.execute(
            select(LineItem).where(LineItem.billing_group_id == group.id).order_by(LineItem.created_at)
        ).scalars().all()

        for item in items:
            if target is not None:
                self._balances.assign(item, target)
            else:
                self._balances.unassign(item)
            self._audit.record_line_item_assigned(
                item.id,
                target.id if target is not None else None,
                previous_billing_group_id=group.id,
                user_id=user_id,
                reason="billing group closed",
                action=AuditAction.ASSIGNED if target is not None else AuditAction.UNASSIGNED,
            )

        declined = self._decline_pending_approvals(group, user_id)

        group.status = GroupStatus.CLOSED.value
        group.closed_at = self._clock.now_utc()
        self.session.flush()

        self._audit.record_event(
            AuditEntityType.BILLING_GROUP,
            group.id,
            AuditAction.DELETED,
            user_id=user_id,
            changes={"status": {"from": GroupStatus.ACTIVE.value, "to": GroupStatus.CLOSED.value}},
            metadata={
                "tabId": str(group.tab_id),
                "lineItemsMoved": len(items),
                "pendingApprovalsDeclined": declined,
                "movedTo": str(target.id) if target is not None else None,
            },
        )
        logger.info(
            "billing_group_closed",
            extra={
                "billing_group_id": str(group.id),
                "line_items": len(items),
                "pending_declined": declined,
                "moved_to": str(target.id) if target is not None else None,
            },
        )
        return group

    def _decline_pending_approvals(self, group: BillingGroup, user_id: str | None) -> int:
        """Clear approvals waiting on ``group``; a closed group can never accept them."""
        pending = self.session.execute(
            select(LineItem)
            .where(LineItem.pending_billing_group_id == group.id)
            .order_by(LineItem.created_at)
        ).scalars().all()

        for item in pending:
            rule_id = str(item.pending_rule_id) if item.pending_rule_id else None
            item.pending_billing_group_id = None
            item.pending_rule_id = None
            item.assignment_status = (
                AssignmentStatus.ASSIGNED.value if item.billing_group_id
                else AssignmentStatus.UNASSIGNED.value
            )
            self._audit.record_line_item_assigned(
                item.id,
                item.billing_group_id,
                previous_billing_group_id=item.billing_group_id,
                user_id=user_id,
                reason="billing group closed",
                action=AuditAction.UNASSIGNED,
                metadata={"ruleId": rule_id, "declinedBillingGroupId": str(group.id)},
            )
        self.session.flush()
        return len(pending)

    def get_audit_trail(
        self,
        billing_group_id: Any,
        include_rules: bool = False,
        include_line_items: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> AuditTrailResult:
        """Audit events of a group, optionally with its rules and current items."""
        group = self.get_billing_group(billing_group_id)
        related: list[Any] = []
        if include_rules:
            related.extend(self.session.execute(
                select(BillingGroupRuleModel.id).where(BillingGroupRuleModel.billing_group_id == group.id)
            ).scalars())
        if include_line_items:
            related.extend(self.session.execute(
                select(LineItem.id).where(LineItem.billing_group_id == group.id)
            ).scalars())
        return self._audit.get_billing_group_audit_trail(
            group.id, related, limit=limit, offset=offset
        )
