"""
billing_engines.rule_engine -- Billing group rule selection.

Responsibility:
    Given a line item and the rules of its tab's billing groups, pick the
    one rule whose action applies.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The assignment service
    loads rules, supplies ``now`` and carries out the returned action.

Invariants enforced:
    - Deterministic ordering: active rules are evaluated by priority
      ascending (lower number first); equal priorities fall back to
      created_at ascending (earliest wins), then creation_seq ascending,
      then to input order.
    - First match wins; no match returns None (item stays unassigned).
    - A rule with malformed conditions never matches and never aborts
      evaluation of the remaining rules.
"""

from __future__ import annotations

import sys
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from billing_engines.conditions import matches
from billing_engines.tracer import traced_engine
from billing_kernel.domain.dtos import LineItemSnapshot
from billing_kernel.domain.rules import BillingGroupRuleSpec, RuleAction
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.rule_engine")

_NEVER = datetime.max.replace(tzinfo=timezone.utc)
_NO_SEQUENCE = sys.maxsize


@dataclass(frozen=True)
class RuleMatch:
    """The winning rule and the action it asks for."""

    rule: BillingGroupRuleSpec
    action: RuleAction
    billing_group_id: str


def _created_key(rule: BillingGroupRuleSpec) -> datetime:
    if rule.created_at is None:
        return _NEVER
    if rule.created_at.tzinfo is None:
        return rule.created_at.replace(tzinfo=timezone.utc)
    return rule.created_at


def _sequence_key(rule: BillingGroupRuleSpec) -> int:
    return _NO_SEQUENCE if rule.creation_seq is None else rule.creation_seq


def rule_evaluation_order(
    rules: Sequence[BillingGroupRuleSpec],
) -> list[BillingGroupRuleSpec]:
    """Active rules in the order they are evaluated."""
    active = [r for r in rules if r.is_active]
    return sorted(active, key=lambda r: (r.priority, _created_key(r), _sequence_key(r)))


@traced_engine("rule_engine", "1.0", fingerprint_fields=("line_item", "now"))
def select_action(
    line_item: LineItemSnapshot,
    rules: Sequence[BillingGroupRuleSpec],
    now: datetime,
) -> RuleMatch | None:
    """
    Select the action for a line item.

    Preconditions: ``now`` is the evaluation time in merchant local time.
    Postconditions: Returns the RuleMatch of the first matching active rule
        in ``rule_evaluation_order``, or None.
    """
    for rule in rule_evaluation_order(rules):
        if matches(line_item, rule.conditions, now):
            logger.debug(
                "rule_matched",
                extra={
                    "line_item_id": line_item.line_item_id,
                    "rule_id": rule.rule_id,
                    "priority": rule.priority,
                    "action": rule.action.value,
                },
            )
            return RuleMatch(
                rule=rule,
                action=RuleAction(rule.action),
                billing_group_id=rule.billing_group_id,
            )

    logger.debug(
        "no_rule_matched",
        extra={"line_item_id": line_item.line_item_id, "rule_count": len(rules)},
    )
    return None
