"""
Rules -- Typed billing group rule conditions and rule snapshots.

Responsibility:
    Turns the loosely-shaped JSON conditions stored on a billing group rule
    into a small typed struct with explicit optionality, validated when a
    rule is authored so that malformed rules never reach the evaluator.

Architecture position:
    Kernel > Domain -- pure, zero I/O. Consumed by
    billing_engines.conditions and billing_engines.rule_engine, and by
    BillingGroupRuleService at authoring time.

Invariants enforced:
    - Amount bounds are non-negative Decimals with min <= max.
    - Time bounds are HH:MM 24h values.
    - Day-of-week values are ints 0..6 (0 = Sunday).
    - Metadata conditions map string keys to scalar values, held in the
      text form they are compared in (``metadata_text``).

Failure modes:
    - InvalidRuleConditionsError from ``RuleConditions.from_dict`` on any
      malformed field. The evaluator catches it and fails closed.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from billing_kernel.exceptions import InvalidRuleConditionsError

DEFAULT_RULE_PRIORITY = 100

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# Persisted JSON uses camelCase; snake_case is accepted on input.
_KEY_ALIASES = {
    "category": "category",
    "amount": "amount",
    "time": "time",
    "dayOfWeek": "day_of_week",
    "day_of_week": "day_of_week",
    "metadata": "metadata",
}


def metadata_text(value: Any) -> str:
    """Text form used to compare metadata values; bools render as JSON does."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_scalar(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, (str, int, Decimal))


class RuleAction(str, Enum):
    """What happens to a line item when a rule matches."""

    AUTO_ASSIGN = "auto_assign"
    REQUIRE_APPROVAL = "require_approval"
    NOTIFY = "notify"
    REJECT = "reject"


def _parse_amount_bound(raw: Any, name: str) -> Decimal | None:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str, Decimal)):
        raise InvalidRuleConditionsError(f"amount.{name}", f"not numeric: {raw!r}")
    try:
        value = Decimal(str(raw))
    except InvalidOperation as e:
        raise InvalidRuleConditionsError(f"amount.{name}", f"not numeric: {raw!r}") from e
    if not value.is_finite():
        raise InvalidRuleConditionsError(f"amount.{name}", f"not finite: {raw!r}")
    if value < 0:
        raise InvalidRuleConditionsError(f"amount.{name}", "must not be negative")
    return value


def _parse_hhmm(raw: Any, name: str) -> time | None:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise InvalidRuleConditionsError(f"time.{name}", f"expected HH:MM string, got {raw!r}")
    match = _HHMM.match(raw.strip())
    if match is None:
        raise InvalidRuleConditionsError(f"time.{name}", f"expected HH:MM, got {raw!r}")
    return time(int(match.group(1)), int(match.group(2)))


@dataclass(frozen=True)
class AmountRange:
    """Inclusive bounds on a line item's total price. Either side may be open."""

    min: Decimal | None = None
    max: Decimal | None = None

    def __post_init__(self) -> None:
        if self.min is not None and self.max is not None and self.min > self.max:
            raise InvalidRuleConditionsError(
                "amount", f"min {self.min} is greater than max {self.max}"
            )

    def contains(self, amount: Decimal) -> bool:
        if self.min is not None and amount < self.min:
            return False
        if self.max is not None and amount > self.max:
            return False
        return True


@dataclass(frozen=True)
class TimeWindow:
    """
    Inclusive HH:MM window in the merchant's local time.

    A window whose end is earlier than its start spans midnight:
    22:00-02:00 matches 23:15 and 01:30 but not 12:00.
    """

    start: time | None = None
    end: time | None = None

    @property
    def wraps_midnight(self) -> bool:
        return self.start is not None and self.end is not None and self.end < self.start

    def contains(self, moment: datetime) -> bool:
        current = time(moment.hour, moment.minute)
        if self.wraps_midnight:
            return current >= self.start or current <= self.end
        if self.start is not None and current < self.start:
            return False
        if self.end is not None and current > self.end:
            return False
        return True


@dataclass(frozen=True)
class RuleConditions:
    """
    Conditions a line item must satisfy for a rule to match.

    Contract:
        Every present field is ANDed; an absent (None) or empty field is a
        wildcard. ``RuleConditions()`` matches every line item.

    Guarantees:
        - Instances built via ``from_dict`` are fully validated.
        - ``to_dict`` renders the canonical camelCase JSON that
          ``from_dict`` accepts.
    """

    category: tuple[str, ...] = ()
    amount: AmountRange | None = None
    time: TimeWindow | None = None
    day_of_week: frozenset[int] = frozenset()
    metadata: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> RuleConditions:
        """
        Parse and validate persisted rule conditions.

        Preconditions: raw is a mapping (or None for "match everything").
        Postconditions: Returns a fully validated RuleConditions.

        Raises:
            InvalidRuleConditionsError: If any field is malformed.
        """
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise InvalidRuleConditionsError("conditions", f"expected an object, got {type(raw).__name__}")

        values: dict[str, Any] = {}
        for key, value in raw.items():
            canonical = _KEY_ALIASES.get(key)
            if canonical is None:
                raise InvalidRuleConditionsError(str(key), "unknown condition")
            values[canonical] = value

        category: tuple[str, ...] = ()
        raw_category = values.get("category")
        if raw_category is not None:
            if not isinstance(raw_category, (list, tuple)) or not all(
                isinstance(c, str) for c in raw_category
            ):
                raise InvalidRuleConditionsError("category", "expected a list of strings")
            category = tuple(raw_category)

        amount = None
        raw_amount = values.get("amount")
        if raw_amount is not None:
            if not isinstance(raw_amount, Mapping):
                raise InvalidRuleConditionsError("amount", "expected an object with min/max")
            unknown = set(raw_amount) - {"min", "max"}
            if unknown:
                raise InvalidRuleConditionsError("amount", f"unknown keys {sorted(unknown)}")
            amount = AmountRange(
                min=_parse_amount_bound(raw_amount.get("min"), "min"),
                max=_parse_amount_bound(raw_amount.get("max"), "max"),
            )

        window = None
        raw_time = values.get("time")
        if raw_time is not None:
            if not isinstance(raw_time, Mapping):
                raise InvalidRuleConditionsError("time", "expected an object with start/end")
            unknown = set(raw_time) - {"start", "end"}
            if unknown:
                raise InvalidRuleConditionsError("time", f"unknown keys {sorted(unknown)}")
            window = TimeWindow(
                start=_parse_hhmm(raw_time.get("start"), "start"),
                end=_parse_hhmm(raw_time.get("end"), "end"),
            )

        days: frozenset[int] = frozenset()
        raw_days = values.get("day_of_week")
        if raw_days is not None:
            if not isinstance(raw_days, (list, tuple)) or not all(
                isinstance(d, int) and not isinstance(d, bool) and 0 <= d <= 6
                for d in raw_days
            ):
                raise InvalidRuleConditionsError(
                    "dayOfWeek", "expected a list of ints 0-6 (0 = Sunday)"
                )
            days = frozenset(raw_days)

        metadata: dict[str, str] = {}
        raw_metadata = values.get("metadata")
        if raw_metadata is not None:
            if not isinstance(raw_metadata, Mapping) or not all(
                isinstance(k, str) and _is_scalar(v) for k, v in raw_metadata.items()
            ):
                raise InvalidRuleConditionsError(
                    "metadata", "expected an object of string keys to scalar values"
                )
            metadata = {k: metadata_text(v) for k, v in raw_metadata.items()}

        return cls(
            category=category,
            amount=amount,
            time=window,
            day_of_week=days,
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.category:
            out["category"] = list(self.category)
        if self.amount is not None:
            bounds = {}
            if self.amount.min is not None:
                bounds["min"] = str(self.amount.min)
            if self.amount.max is not None:
                bounds["max"] = str(self.amount.max)
            out["amount"] = bounds
        if self.time is not None:
            window = {}
            if self.time.start is not None:
                window["start"] = self.time.start.strftime("%H:%M")
            if self.time.end is not None:
                window["end"] = self.time.end.strftime("%H:%M")
            out["time"] = window
        if self.day_of_week:
            out["dayOfWeek"] = sorted(self.day_of_week)
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out

    @property
    def is_wildcard(self) -> bool:
        return not self.to_dict()


@dataclass(frozen=True)
class BillingGroupRuleSpec:
    """
    Read-only snapshot of a billing group rule, as seen by the rule engine.

    ``conditions`` is normally a validated RuleConditions. Rows written
    outside the rule service may still carry a raw mapping, which the
    evaluator parses and rejects (fails closed) if malformed.

    ``creation_seq`` orders rules whose priority and created_at are equal.
    """

    rule_id: str
    billing_group_id: str
    name: str
    action: RuleAction
    conditions: RuleConditions | Mapping[str, Any]
    priority: int = DEFAULT_RULE_PRIORITY
    is_active: bool = True
    created_at: datetime | None = None
    creation_seq: int | None = None
