"""
BillingGroupRuleService -- authoring of billing group automation rules.

Responsibility:
    Creates, updates and deactivates the rules the rule engine evaluates.
    Conditions are validated through ``RuleConditions.from_dict`` and
    stored as canonical camelCase JSON, so malformed rules never reach the
    evaluator through this service.

Architecture position:
    Kernel > Services.  The rule engine only reads rules; this service is
    the only writer.

Invariants enforced:
    - created_at is stamped from the injected clock and creation_seq from
      the rule sequence; they break priority ties in that order, so rules
      created within one clock tick still keep their creation order.
    - Rules are never deleted: ``deactivate_rule`` clears is_active.
    - Rules can only be attached to active billing groups.

Failure modes:
    - InvalidRuleConditionsError for malformed conditions.
    - ValidationError for an unknown action, an empty name or a
      non-integer priority.
    - BillingGroupNotFoundError, BillingGroupRuleNotFoundError,
      BillingGroupClosedError.
"""

from collections.abc import Mapping
from typing import Any

from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock
from billing_kernel.domain.rules import DEFAULT_RULE_PRIORITY, RuleAction, RuleConditions
from billing_kernel.exceptions import (
    BillingGroupClosedError,
    BillingGroupNotFoundError,
    BillingGroupRuleNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.audit_event import AuditAction, AuditEntityType
from billing_kernel.models.billing_group import BillingGroup, BillingGroupRuleModel
from billing_kernel.services.audit_service import BillingAuditService, SqlAuditSink
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.rules")

_UPDATABLE_FIELDS = frozenset({"name", "priority", "action", "conditions", "is_active"})


def _action(value: RuleAction | str) -> RuleAction:
    try:
        return RuleAction(value)
    except ValueError:
        raise ValidationError(f"Unknown rule action: {value!r}", field="action") from None


def _priority(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"priority must be an integer, got {value!r}", field="priority")
    return value


def _canonical_conditions(conditions: RuleConditions | Mapping[str, Any] | None) -> dict[str, Any]:
    if not isinstance(conditions, RuleConditions):
        conditions = RuleConditions.from_dict(conditions)
    return conditions.to_dict()


class BillingGroupRuleService(BaseService[BillingGroupRuleModel]):
    """
    Rule authoring.

    Contract:
        Every write validates its input first, flushes, and records an
        audit event on the ``billing_group_rule`` entity.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        audit: BillingAuditService | None = None,
        default_priority: int = DEFAULT_RULE_PRIORITY,
    ):
        super().__init__(session, clock)
        self._audit = audit or BillingAuditService(SqlAuditSink(session), self._clock)
        self._default_priority = default_priority
        self._sequences = SequenceService(session)

    def get_rule(self, rule_id: Any, for_update: bool = False) -> BillingGroupRuleModel:
        return self._get_or_raise(
            BillingGroupRuleModel, rule_id, BillingGroupRuleNotFoundError, for_update=for_update
        )

    def create_rule(
        self,
        billing_group_id: Any,
        name: str,
        conditions: RuleConditions | Mapping[str, Any] | None = None,
        action: RuleAction | str = RuleAction.AUTO_ASSIGN,
        priority: int | None = None,
        is_active: bool = True,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> BillingGroupRuleModel:
        group = self._get_or_raise(BillingGroup, billing_group_id, BillingGroupNotFoundError)
        if not group.is_active:
            raise BillingGroupClosedError(str(group.id))
        if not name or not name.strip():
            raise ValidationError("Rule name is required", field="name")

        rule = BillingGroupRuleModel(
            billing_group_id=group.id,
            name=name.strip(),
            priority=_priority(self._default_priority if priority is None else priority),
            action=_action(action).value,
            conditions=_canonical_conditions(conditions),
            is_active=bool(is_active),
            creation_seq=self._sequences.next_value(SequenceService.BILLING_GROUP_RULE),
        )
        now = self._clock.now_utc()
        rule.created_at = now
        rule.updated_at = now
        self.session.add(rule)
        self.session.flush()

        self._audit.record_rule_created(rule, user_id=user_id, user_email=user_email)
        logger.info(
            "billing_group_rule_created",
            extra={
                "rule_id": str(rule.id),
                "billing_group_id": str(group.id),
                "priority": rule.priority,
                "action": rule.action,
            },
        )
        return rule

    def update_rule(
        self,
        rule_id: Any,
        user_id: str | None = None,
        **updates: Any,
    ) -> BillingGroupRuleModel:
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update rule fields: {sorted(unknown)}")

        normalized: dict[str, Any] = {}
        for key, value in updates.items():
            if key == "name":
                if not value or not str(value).strip():
                    raise ValidationError("Rule name is required", field="name")
                normalized[key] = str(value).strip()
            elif key == "priority":
                normalized[key] = _priority(value)
            elif key == "action":
                normalized[key] = _action(value).value
            elif key == "conditions":
                normalized[key] = _canonical_conditions(value)
            else:
                normalized[key] = bool(value)

        rule = self.get_rule(rule_id, for_update=True)
        changes: dict[str, dict[str, Any]] = {}
        for key, value in normalized.items():
            old = getattr(rule, key)
            if old != value:
                changes[key] = {"from": old, "to": value}
                # JSON columns are replaced, never mutated in place
                setattr(rule, key, value)
        if changes:
            rule.updated_at = self._clock.now_utc()
        self.session.flush()

        if changes:
            self._audit.record_event(
                AuditEntityType.BILLING_GROUP_RULE,
                rule.id,
                AuditAction.UPDATED,
                user_id=user_id,
                changes=changes,
                metadata={"billingGroupId": str(rule.billing_group_id)},
            )
            logger.info(
                "billing_group_rule_updated",
                extra={"rule_id": str(rule.id), "fields": sorted(changes)},
            )
        return rule

    def deactivate_rule(self, rule_id: Any, user_id: str | None = None) -> BillingGroupRuleModel:
        rule = self.get_rule(rule_id, for_update=True)
        if not rule.is_active:
            return rule
        rule.is_active = False
        rule.updated_at = self._clock.now_utc()
        self.session.flush()

        self._audit.record_event(
            AuditEntityType.BILLING_GROUP_RULE,
            rule.id,
            AuditAction.DELETED,
            user_id=user_id,
            changes={"isActive": {"from": True, "to": False}},
            metadata={"billingGroupId": str(rule.billing_group_id)},
        )
        logger.info("billing_group_rule_deactivated", extra={"rule_id": str(rule.id)})
        return rule
