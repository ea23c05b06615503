"""
Module: billing_kernel.selectors.billing_group_selector
Responsibility: Read models for billing groups: the rules the engine
    evaluates for a tab and the per-group billing summary of a tab.
Architecture position: Kernel > Selectors.  Read-only; returns DTOs.

Invariants enforced:
    - Only active rules of active groups are handed to the rule engine.
    - Summary totals are sums of stored (already rounded) item totals.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from billing_kernel.db.types import ZERO, round_money
from billing_kernel.domain.dtos import (
    BillingGroupSnapshot,
    BillingGroupSummary,
    GroupStatus,
    LineItemSnapshot,
    TabBillingSummary,
)
from billing_kernel.domain.rules import BillingGroupRuleSpec, RuleAction
from billing_kernel.exceptions import TabNotFoundError
from billing_kernel.models.billing_group import BillingGroup, BillingGroupRuleModel
from billing_kernel.models.tab import LineItem, Tab
from billing_kernel.selectors.base import BaseSelector


def rule_spec_from_model(rule: BillingGroupRuleModel) -> BillingGroupRuleSpec:
    """Raw conditions pass through; the evaluator validates them (fail closed)."""
    return BillingGroupRuleSpec(
        rule_id=str(rule.id),
        billing_group_id=str(rule.billing_group_id),
        name=rule.name,
        action=RuleAction(rule.action),
        conditions=dict(rule.conditions or {}),
        priority=rule.priority,
        is_active=rule.is_active,
        created_at=rule.created_at,
        creation_seq=rule.creation_seq,
    )


def _as_uuid(value: Any) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class BillingGroupSelector(BaseSelector[BillingGroup]):
    """Read-only queries over billing groups and their rules."""

    def active_groups(self, tab_id: Any) -> list[BillingGroupSnapshot]:
        key = _as_uuid(tab_id)
        if key is None:
            return []
        groups = self.session.execute(
            select(BillingGroup)
            .where(BillingGroup.tab_id == key, BillingGroup.status == GroupStatus.ACTIVE.value)
            .order_by(BillingGroup.created_at, BillingGroup.id)
        ).scalars().all()
        return [BillingGroupSnapshot.from_model(g) for g in groups]

    def active_rules_for_tab(self, tab_id: Any) -> list[BillingGroupRuleSpec]:
        """Active rules of the tab's active groups, in creation order."""
        key = _as_uuid(tab_id)
        if key is None:
            return []
        rules = self.session.execute(
            select(BillingGroupRuleModel)
            .join(BillingGroup, BillingGroupRuleModel.billing_group_id == BillingGroup.id)
            .where(
                BillingGroup.tab_id == key,
                BillingGroup.status == GroupStatus.ACTIVE.value,
                BillingGroupRuleModel.is_active.is_(True),
            )
            .order_by(BillingGroupRuleModel.created_at, BillingGroupRuleModel.creation_seq)
        ).scalars().all()
        return [rule_spec_from_model(r) for r in rules]

    def rules_for_group(self, billing_group_id: Any) -> list[BillingGroupRuleSpec]:
        key = _as_uuid(billing_group_id)
        if key is None:
            return []
        rules = self.session.execute(
            select(BillingGroupRuleModel)
            .where(BillingGroupRuleModel.billing_group_id == key)
            .order_by(
                BillingGroupRuleModel.priority,
                BillingGroupRuleModel.created_at,
                BillingGroupRuleModel.creation_seq,
            )
        ).scalars().all()
        return [rule_spec_from_model(r) for r in rules]

    def get_tab_billing_summary(self, tab_id: Any) -> TabBillingSummary:
        """
        Per-group item totals and deposit remaining, plus unassigned items.

        Closed groups are listed only while they still hold items (they
        normally hold none after closing).

        Raises:
            TabNotFoundError: no tab with ``tab_id``.
        """
        key = _as_uuid(tab_id)
        tab = self.session.get(Tab, key) if key is not None else None
        if tab is None:
            raise TabNotFoundError(str(tab_id))

        groups = self.session.execute(
            select(BillingGroup)
            .where(BillingGroup.tab_id == tab.id)
            .order_by(BillingGroup.created_at, BillingGroup.id)
        ).scalars().all()
        items = self.session.execute(
            select(LineItem)
            .where(LineItem.tab_id == tab.id)
            .order_by(LineItem.created_at, LineItem.id)
        ).scalars().all()

        by_group: dict[UUID, list[LineItemSnapshot]] = {g.id: [] for g in groups}
        unassigned: list[LineItemSnapshot] = []
        for item in items:
            snapshot = LineItemSnapshot.from_model(item)
            if item.billing_group_id in by_group:
                by_group[item.billing_group_id].append(snapshot)
            else:
                unassigned.append(snapshot)

        summaries = []
        for group in groups:
            group_items = by_group[group.id]
            if not group.is_active and not group_items:
                continue
            snapshot = BillingGroupSnapshot.from_model(group)
            summaries.append(BillingGroupSummary(
                group=snapshot,
                line_items=tuple(group_items),
                item_total=round_money(sum((i.total_price for i in group_items), ZERO)),
                deposit_remaining=round_money(snapshot.deposit_remaining),
            ))

        total = round_money(sum((i.total_price for i in items), Decimal("0")))
        return TabBillingSummary(
            tab_id=str(tab.id),
            groups=tuple(summaries),
            unassigned_items=tuple(unassigned),
            total_amount=total,
        )
