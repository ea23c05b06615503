"""
billing_engines.conditions -- Rule condition evaluator.

Responsibility:
    Decide whether one line item satisfies one rule's conditions at a given
    moment.  Category, amount, time-of-day, day-of-week and metadata checks
    are ANDed; absent or empty checks are wildcards.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  ``now`` is passed in by
    the caller, already converted to the merchant's local timezone.

Invariants enforced:
    - Never raises: malformed conditions make the rule non-matching
      (fail closed), so one bad rule cannot break rule evaluation.
    - Deterministic for a given (line_item, conditions, now).

Failure modes:
    - Malformed raw conditions are logged as ``rule_conditions_malformed``
      and evaluate to False.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from billing_kernel.domain.dtos import LineItemSnapshot
from billing_kernel.domain.rules import RuleConditions, metadata_text
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.conditions")


def weekday_sunday_zero(moment: datetime) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


def coerce_conditions(
    conditions: RuleConditions | Mapping[str, Any] | None,
) -> RuleConditions:
    """Parse raw conditions. Raises ValidationError when malformed."""
    if isinstance(conditions, RuleConditions):
        return conditions
    return RuleConditions.from_dict(conditions)


def _item_category(line_item: LineItemSnapshot) -> str | None:
    if line_item.category:
        return line_item.category
    category = line_item.metadata.get("category")
    return category if isinstance(category, str) else None


def _metadata_matches(line_item: LineItemSnapshot, required: Mapping[str, str]) -> bool:
    for key, expected in required.items():
        if key not in line_item.metadata:
            return False
        actual = line_item.metadata[key]
        if actual is None or metadata_text(actual) != expected:
            return False
    return True


def matches(
    line_item: LineItemSnapshot,
    conditions: RuleConditions | Mapping[str, Any] | None,
    now: datetime,
) -> bool:
    """
    Evaluate rule conditions against a line item.

    Preconditions: ``now`` is the evaluation time in the merchant's local
        timezone (not the line item's creation time).
    Postconditions: Returns True iff every present condition holds.
        ``RuleConditions()`` matches every item.
    """
    try:
        parsed = coerce_conditions(conditions)
    except ValidationError as exc:
        logger.warning(
            "rule_conditions_malformed",
            extra={"line_item_id": line_item.line_item_id, "reason": str(exc)},
        )
        return False

    if parsed.category and _item_category(line_item) not in parsed.category:
        return False

    if parsed.amount is not None and not parsed.amount.contains(line_item.total_price):
        return False

    if parsed.time is not None and not parsed.time.contains(now):
        return False

    if parsed.day_of_week and weekday_sunday_zero(now) not in parsed.day_of_week:
        return False

    if parsed.metadata and not _metadata_matches(line_item, parsed.metadata):
        return False

    return True
