"""
ORM-level append-only enforcement for billing records.

SQLAlchemy fires mapper events before UPDATE/DELETE statements are sent:

    session.flush()
         |
         v
    [before_update] --> _check_*_update() --> ImmutabilityViolationError
    [before_delete] --> _check_*_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Protected entities:

Entity                  | Rule
------------------------|---------------------------------------------------
AuditEvent              | Never updated, never deleted
PaymentAllocationBatch  | Only reversed_at may change (once); never deleted
PaymentAllocation       | Only reversed_at may change (once); never deleted

Reversal of a payment allocation is therefore an append (a timestamp plus a
new audit event), never a destructive edit.
"""

from sqlalchemy import event, inspect

from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_REVERSAL_FIELDS = frozenset({"reversed_at"})


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_audit_event_update(mapper, connection, target):
    _block("AuditEvent", target, "UPDATE", "Audit events are immutable and cannot be modified")


def _check_audit_event_delete(mapper, connection, target):
    _block("AuditEvent", target, "DELETE", "Audit events cannot be deleted")


def _check_allocation_update(mapper, connection, target):
    """Allow exactly one transition: reversed_at from NULL to a timestamp."""
    entity_type = type(target).__name__
    state = inspect(target)
    for column_attr in state.mapper.column_attrs:
        hist = state.attrs[column_attr.key].history
        if not hist.has_changes():
            continue
        if column_attr.key not in _REVERSAL_FIELDS:
            _block(
                entity_type,
                target,
                "UPDATE",
                f"Cannot modify field '{column_attr.key}' on a payment allocation",
            )
        if hist.deleted and hist.deleted[0] is not None:
            _block(entity_type, target, "UPDATE", "Allocation was already reversed")


def _check_allocation_delete(mapper, connection, target):
    _block(
        type(target).__name__,
        target,
        "DELETE",
        "Payment allocations are append-only; reverse instead of deleting",
    )


def _listeners():
    from billing_kernel.models.audit_event import AuditEvent
    from billing_kernel.models.payment import PaymentAllocation, PaymentAllocationBatch

    return [
        (AuditEvent, "before_update", _check_audit_event_update),
        (AuditEvent, "before_delete", _check_audit_event_delete),
        (PaymentAllocationBatch, "before_update", _check_allocation_update),
        (PaymentAllocationBatch, "before_delete", _check_allocation_delete),
        (PaymentAllocation, "before_update", _check_allocation_update),
        (PaymentAllocation, "before_delete", _check_allocation_delete),
    ]


def register_immutability_listeners() -> None:
    """
    Register the append-only listeners.

    Call once during application start, after models are imported and
    before any database writes. Safe to call repeatedly.
    """
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """Remove the listeners. Only for tests that must bypass them."""
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
