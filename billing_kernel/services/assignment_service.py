"""
LineItemAssignmentService -- routes line items into billing groups.

Responsibility:
    Adds line items to tabs, runs the rule engine on them and carries out
    the winning rule's action.  Also handles manual assignment, override,
    unassignment and the approval workflow for ``require_approval`` rules.

Architecture position:
    Kernel > Services -- imperative shell around the pure rule engine
    (``billing_engines.rule_engine.select_action``).  Loads rules through
    BillingGroupSelector, mutates balances through
    BillingGroupBalanceTracker and records every outcome through
    BillingAuditService.

Invariants enforced:
    - Rule evaluation time is the injected clock converted to the
      merchant's timezone, never the line item's creation time.
    - ``reject`` raises before anything is mutated; the caller's
      transaction rolls back the rest (including a just-added item).
    - ``require_approval`` never assigns: it records the pending group and
      rule on the item until approved or declined.
    - A line item can only be assigned to a group of its own tab.

Failure modes:
    - LineItemNotFoundError, TabNotFoundError, BillingGroupNotFoundError.
    - RuleRejectedError, NoPendingAssignmentError.
    - CreditLimitExceededError, BillingGroupClosedError (from the tracker).
    - ValidationError on malformed line item input or a cross-tab target.

Audit relevance:
    Every applied outcome is one ``line_item_assignment`` audit event:
    ``assigned``, ``override``, ``unassigned`` or ``pending_approval``.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.orm import Session

from billing_engines.rule_engine import select_action
from billing_kernel.db.types import line_total, round_money
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.dtos import AssignmentOutcome, AssignmentStatus, LineItemSnapshot
from billing_kernel.domain.rules import RuleAction
from billing_kernel.exceptions import (
    BillingGroupNotFoundError,
    LineItemNotFoundError,
    NoPendingAssignmentError,
    RuleRejectedError,
    TabNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.audit_event import AuditAction
from billing_kernel.models.billing_group import BillingGroup
from billing_kernel.models.tab import LineItem, Tab
from billing_kernel.selectors.billing_group_selector import BillingGroupSelector
from billing_kernel.services.audit_service import BillingAuditService, SqlAuditSink
from billing_kernel.services.balance_tracker import BillingGroupBalanceTracker
from billing_kernel.services.base import BaseService
from billing_kernel.services.notifications import (
    LoggingNotificationSink,
    NotificationSink,
    RuleNotification,
)

logger = get_logger("services.assignment")


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, float):
        raise ValidationError(f"{name} must be a Decimal or string, not float", field=name)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{name} is not a number: {value!r}", field=name) from None


class LineItemAssignmentService(BaseService[LineItem]):
    """
    Line item routing and assignment.

    Contract:
        Each public method is one unit of work inside the caller's
        transaction and returns an AssignmentOutcome (or the new LineItem).

    Non-goals:
        - Does NOT decide rule order (the rule engine does).
        - Does NOT deliver notifications itself; it hands them to the
          injected NotificationSink.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        audit: BillingAuditService | None = None,
        notifications: NotificationSink | None = None,
        timezone: str = "UTC",
        balance_tracker: BillingGroupBalanceTracker | None = None,
    ):
        super().__init__(session, clock)
        self._audit = audit or BillingAuditService(SqlAuditSink(session), self._clock)
        self._notifications = notifications or LoggingNotificationSink()
        self._timezone = timezone
        self._balances = balance_tracker or BillingGroupBalanceTracker(session, self._clock)
        self._groups = BillingGroupSelector(session)

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    def add_line_item(
        self,
        tab_id: Any,
        description: str,
        unit_price: Decimal | str | int,
        quantity: Decimal | str | int = 1,
        category: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        apply_rules: bool = True,
        user_id: str | None = None,
    ) -> LineItem:
        """
        Add a line item; total_price = round_money(quantity * unit_price).

        With ``apply_rules`` the rule engine runs on the new item right
        away.  A ``reject`` rule raises RuleRejectedError and the caller's
        rollback discards the item.
        """
        tab = self._get_or_raise(Tab, tab_id, TabNotFoundError)
        if not description or not description.strip():
            raise ValidationError("Line item description is required", field="description")
        qty = _decimal(quantity, "quantity")
        price = _decimal(unit_price, "unit_price")
        if qty <= 0:
            raise ValidationError(f"quantity must be positive, got {qty}", field="quantity")
        if price < 0:
            raise ValidationError(f"unit_price must not be negative, got {price}", field="unit_price")

        item = LineItem(
            tab_id=tab.id,
            description=description.strip(),
            category=category,
            quantity=qty,
            unit_price=round_money(price),
            total_price=line_total(qty, price),
            assignment_status=AssignmentStatus.UNASSIGNED.value,
            item_metadata=dict(metadata or {}),
        )
        self.session.add(item)
        self.session.flush()

        logger.info(
            "line_item_added",
            extra={"line_item_id": str(item.id), "tab_id": str(tab.id), "total": str(item.total_price)},
        )
        if apply_rules:
            self.apply_rules(item.id, user_id=user_id)
        return item

    def _get_item(self, line_item_id: Any) -> LineItem:
        return self._get_or_raise(LineItem, line_item_id, LineItemNotFoundError, for_update=True)

    def _get_group_for_item(self, item: LineItem, billing_group_id: Any) -> BillingGroup:
        group = self._get_or_raise(
            BillingGroup, billing_group_id, BillingGroupNotFoundError, for_update=True
        )
        if group.tab_id != item.tab_id:
            raise ValidationError(
                f"Billing group {group.id} does not belong to the line item's tab",
                field="billing_group_id",
            )
        return group

    @staticmethod
    def _outcome(item: LineItem, rule_id: str | None = None, action: str | None = None) -> AssignmentOutcome:
        return AssignmentOutcome(
            line_item_id=str(item.id),
            status=AssignmentStatus(item.assignment_status),
            billing_group_id=str(item.billing_group_id) if item.billing_group_id else None,
            rule_id=rule_id,
            action=action,
        )

    # ------------------------------------------------------------------
    # Rule-driven assignment
    # ------------------------------------------------------------------

    def apply_rules(self, line_item_id: Any, user_id: str | None = None) -> AssignmentOutcome:
        """
        Evaluate the tab's active rules against a line item and apply the
        first match.

        Raises:
            RuleRejectedError: the winning rule's action is ``reject``.
        """
        item = self._get_item(line_item_id)
        with LogContext.bind(tab_id=str(item.tab_id)):
            rules = self._groups.active_rules_for_tab(item.tab_id)
            now = self._clock.now_local(self._timezone)
            match = select_action(LineItemSnapshot.from_model(item), rules, now)

            if match is None:
                logger.info(
                    "line_item_no_rule_matched",
                    extra={"line_item_id": str(item.id), "rule_count": len(rules)},
                )
                return self._outcome(item)

            rule = match.rule
            if match.action is RuleAction.REJECT:
                logger.warning(
                    "line_item_rejected_by_rule",
                    extra={"line_item_id": str(item.id), "rule_id": rule.rule_id},
                )
                raise RuleRejectedError(str(item.id), rule.rule_id, rule.name)

            group = self._get_group_for_item(item, match.billing_group_id)

            if match.action is RuleAction.REQUIRE_APPROVAL:
                item.pending_billing_group_id = group.id
                item.pending_rule_id = rule.rule_id
                item.assignment_status = AssignmentStatus.PENDING_APPROVAL.value
                self.session.flush()
                self._audit.record_line_item_assigned(
                    item.id,
                    group.id,
                    previous_billing_group_id=item.billing_group_id,
                    user_id=user_id,
                    action=AuditAction.PENDING_APPROVAL,
                    metadata={"ruleId": rule.rule_id, "ruleName": rule.name},
                )
                logger.info(
                    "line_item_pending_approval",
                    extra={"line_item_id": str(item.id), "billing_group_id": str(group.id),
                           "rule_id": rule.rule_id},
                )
                return self._outcome(item, rule.rule_id, match.action.value)

            previous = item.billing_group_id
            self._balances.assign(item, group)
            self._audit.record_line_item_assigned(
                item.id,
                group.id,
                previous_billing_group_id=previous,
                user_id=user_id,
                metadata={"ruleId": rule.rule_id, "ruleName": rule.name},
            )

            if match.action is RuleAction.NOTIFY:
                self._notifications.notify(RuleNotification(
                    rule_id=rule.rule_id,
                    rule_name=rule.name,
                    billing_group_id=str(group.id),
                    line_item_id=str(item.id),
                    tab_id=str(item.tab_id),
                    amount=item.total_price,
                    occurred_at=self._clock.now_utc(),
                ))

            return self._outcome(item, rule.rule_id, match.action.value)

    def approve_pending_assignment(self, line_item_id: Any, user_id: str | None = None) -> AssignmentOutcome:
        item = self._get_item(line_item_id)
        if item.assignment_status != AssignmentStatus.PENDING_APPROVAL.value:
            raise NoPendingAssignmentError(str(item.id))

        rule_id = str(item.pending_rule_id) if item.pending_rule_id else None
        group = self._get_group_for_item(item, item.pending_billing_group_id)
        previous = item.billing_group_id
        self._balances.assign(item, group)
        # assign() is a no-op when the item already sits in this group
        item.assignment_status = AssignmentStatus.ASSIGNED.value
        item.pending_billing_group_id = None
        item.pending_rule_id = None
        self.session.flush()

        self._audit.record_line_item_assigned(
            item.id,
            group.id,
            previous_billing_group_id=previous,
            user_id=user_id,
            reason="approved",
            metadata={"ruleId": rule_id},
        )
        return self._outcome(item, rule_id, RuleAction.REQUIRE_APPROVAL.value)

    def decline_pending_assignment(self, line_item_id: Any, user_id: str | None = None,
                                   reason: str | None = None) -> AssignmentOutcome:
        item = self._get_item(line_item_id)
        if item.assignment_status != AssignmentStatus.PENDING_APPROVAL.value:
            raise NoPendingAssignmentError(str(item.id))

        pending_group = item.pending_billing_group_id
        rule_id = str(item.pending_rule_id) if item.pending_rule_id else None
        item.pending_billing_group_id = None
        item.pending_rule_id = None
        item.assignment_status = (
            AssignmentStatus.ASSIGNED.value if item.billing_group_id else AssignmentStatus.UNASSIGNED.value
        )
        self.session.flush()

        self._audit.record_line_item_assigned(
            item.id,
            item.billing_group_id,
            previous_billing_group_id=item.billing_group_id,
            user_id=user_id,
            reason=reason or "approval declined",
            action=AuditAction.UNASSIGNED,
            metadata={"ruleId": rule_id, "declinedBillingGroupId": str(pending_group) if pending_group else None},
        )
        return self._outcome(item, rule_id, RuleAction.REQUIRE_APPROVAL.value)

    # ------------------------------------------------------------------
    # Manual assignment
    # ------------------------------------------------------------------

    def assign_line_item(
        self,
        line_item_id: Any,
        billing_group_id: Any,
        user_id: str | None = None,
        user_email: str | None = None,
        reason: str | None = None,
    ) -> AssignmentOutcome:
        """
        Assign (or move) a line item by hand.

        Moving an item that is already assigned to a different group is an
        override and is audited as such.
        """
        item = self._get_item(line_item_id)
        group = self._get_group_for_item(item, billing_group_id)
        previous = item.billing_group_id
        is_override = previous is not None and previous != group.id

        self._balances.assign(item, group)
        self._audit.record_line_item_assigned(
            item.id,
            group.id,
            previous_billing_group_id=previous,
            user_id=user_id,
            user_email=user_email,
            is_override=is_override,
            reason=reason,
        )
        if is_override:
            logger.info(
                "line_item_assignment_overridden",
                extra={"line_item_id": str(item.id), "from_group": str(previous), "to_group": str(group.id)},
            )
        return self._outcome(item)

    def unassign_line_item(
        self,
        line_item_id: Any,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> AssignmentOutcome:
        item = self._get_item(line_item_id)
        previous = item.billing_group_id
        if previous is None:
            return self._outcome(item)

        self._balances.unassign(item)
        self._audit.record_line_item_assigned(
            item.id,
            None,
            previous_billing_group_id=previous,
            user_id=user_id,
            reason=reason,
            action=AuditAction.UNASSIGNED,
        )
        return self._outcome(item)

    def bulk_assign_line_items(
        self,
        assignments: Iterable[tuple[Any, Any]],
        user_id: str | None = None,
    ) -> list[AssignmentOutcome]:
        """(line_item_id, billing_group_id) pairs, all or nothing."""
        outcomes = [
            self.assign_line_item(line_item_id, billing_group_id, user_id=user_id)
            for line_item_id, billing_group_id in assignments
        ]
        logger.info("line_items_bulk_assigned", extra={"count": len(outcomes)})
        return outcomes
