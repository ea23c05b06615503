"""
BillingAuditService -- append-only audit trail for billing group activity.

Responsibility:
    Records who changed what on billing groups, rules, line item
    assignments and payment allocations, and answers filtered, paginated
    queries over that trail (including CSV export and statistics).

Architecture position:
    Kernel > Services.  Storage is behind the ``AuditSink`` protocol:
    ``InMemoryAuditSink`` (bounded deque) for tools and tests,
    ``SqlAuditSink`` (``billing_audit_events`` table) for production.
    Billing group, rule, assignment and allocation services call the
    ``record_*`` helpers inside their own transaction.

Invariants enforced:
    - Append-only: records are never modified or deleted.  The SQL table
      is protected by the listeners in ``db/immutability.py``.
    - Retention: only the newest ``capacity`` / ``retention_limit``
      records (by sequence) are visible to queries.
    - Ordering: query results are newest first.

Failure modes:
    - ValidationError on an unknown entity type or action, or on malformed
      query parameters.

Audit relevance:
    This IS the audit recorder.  Each record carries before/after
    ``changes`` and free-form ``metadata`` (tab id, amounts, reasons).
"""

from __future__ import annotations

import csv
import io
import json
from collections import Counter, deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timezone
from types import MappingProxyType
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.audit_event import AuditAction, AuditEntityType, AuditEvent
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.audit")

DEFAULT_AUDIT_CAPACITY = 10_000
DEFAULT_PAGE_SIZE = 50

CSV_HEADERS = (
    "Timestamp",
    "Entity Type",
    "Entity ID",
    "Action",
    "User Email",
    "Changes",
    "Metadata",
    "IP Address",
)

SYSTEM_USER = "system"


def _as_utc(moment: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class AuditEventRecord:
    """One audit record as stored and returned by every sink."""

    event_id: str
    seq: int
    entity_type: str
    entity_id: str
    action: str
    user_id: str
    occurred_at: datetime
    changes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    user_email: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_model(cls, event: AuditEvent) -> AuditEventRecord:
        return cls(
            event_id=str(event.id),
            seq=event.seq,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            action=event.action,
            user_id=event.user_id,
            occurred_at=_as_utc(event.occurred_at),
            changes=_freeze(event.changes),
            metadata=_freeze(event.event_metadata),
            user_email=event.user_email,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "action": self.action,
            "userId": self.user_id,
            "userEmail": self.user_email,
            "changes": dict(self.changes),
            "metadata": dict(self.metadata),
            "timestamp": self.occurred_at.isoformat(),
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
        }


def _parse_moment(raw: Any, name: str, end_of_day: bool = False) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        moment = raw
    elif isinstance(raw, date):
        moment = datetime.combine(raw, time.max if end_of_day else time.min)
    else:
        text = str(raw).strip()
        try:
            if len(text) == 10:
                moment = datetime.combine(
                    date.fromisoformat(text), time.max if end_of_day else time.min
                )
            else:
                moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"{name} is not an ISO 8601 date: {raw!r}", field=name) from None
    return _as_utc(moment)


def _parse_int(raw: Any, name: str, minimum: int) -> int:
    try:
        value = int(str(raw))
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}", field=name) from None
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}, got {value}", field=name)
    return value


def _parse_enum(raw: Any, enum_cls: type, name: str) -> str | None:
    if raw is None or raw == "":
        return None
    try:
        return enum_cls(raw).value
    except ValueError:
        raise ValidationError(f"Unknown {name}: {raw!r}", field=name) from None


@dataclass(frozen=True)
class AuditTrailQuery:
    """
    Filters and pagination for an audit trail query.

    All filters are optional and ANDed.  ``entity_ids`` restricts to any of
    several entities (used for a billing group together with its rules and
    line items).  ``search`` is a case-insensitive substring match over the
    entity id, the user email and the metadata values.
    """

    entity_type: str | None = None
    entity_id: str | None = None
    entity_ids: tuple[str, ...] = ()
    action: str | None = None
    user_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0

    @classmethod
    def from_query_params(
        cls,
        params: Mapping[str, Any],
        default_limit: int = DEFAULT_PAGE_SIZE,
        max_limit: int = DEFAULT_AUDIT_CAPACITY,
    ) -> AuditTrailQuery:
        """
        Translate HTTP query parameters into a query.

        Raises:
            ValidationError: on an unknown entity type or action, a
                non-integer or negative limit/offset, or a malformed date.
        """
        limit = params.get("limit")
        offset = params.get("offset")
        return cls(
            entity_type=_parse_enum(params.get("entity_type"), AuditEntityType, "entity_type"),
            entity_id=params.get("entity_id") or None,
            action=_parse_enum(params.get("action"), AuditAction, "action"),
            user_id=params.get("user_id") or None,
            date_from=_parse_moment(params.get("date_from"), "date_from"),
            date_to=_parse_moment(params.get("date_to"), "date_to", end_of_day=True),
            search=params.get("search") or None,
            limit=min(_parse_int(limit, "limit", 1), max_limit) if limit not in (None, "") else default_limit,
            offset=_parse_int(offset, "offset", 0) if offset not in (None, "") else 0,
        )

    def matches(self, record: AuditEventRecord) -> bool:
        if self.entity_type and record.entity_type != self.entity_type:
            return False
        if self.entity_id and record.entity_id != self.entity_id:
            return False
        if self.entity_ids and record.entity_id not in self.entity_ids:
            return False
        if self.action and record.action != self.action:
            return False
        if self.user_id and record.user_id != self.user_id:
            return False
        if self.date_from and record.occurred_at < self.date_from:
            return False
        if self.date_to and record.occurred_at > self.date_to:
            return False
        if self.search and not self.matches_search(record):
            return False
        return True

    def matches_search(self, record: AuditEventRecord) -> bool:
        needle = (self.search or "").lower()
        if needle in record.entity_id.lower():
            return True
        if record.user_email and needle in record.user_email.lower():
            return True
        return any(needle in str(value).lower() for value in record.metadata.values())


@dataclass(frozen=True)
class AuditTrailResult:
    events: tuple[AuditEventRecord, ...]
    total_count: int
    has_more: bool


@dataclass(frozen=True)
class AuditStatistics:
    total_events: int
    unique_users: int
    unique_entities: int
    action_counts: Mapping[str, int]
    entity_type_counts: Mapping[str, int]
    recent_activity: tuple[AuditEventRecord, ...]


def _newest_first(records: Iterable[AuditEventRecord]) -> list[AuditEventRecord]:
    return sorted(records, key=lambda r: (r.occurred_at, r.seq), reverse=True)


class AuditSink(Protocol):
    """Storage for audit records."""

    def append(self, record: AuditEventRecord) -> AuditEventRecord:
        """Store ``record``; returns it with its assigned ``seq``."""
        ...

    def query(self, query: AuditTrailQuery) -> tuple[list[AuditEventRecord], int]:
        """Return (page of matching records newest first, total match count)."""
        ...


class InMemoryAuditSink:
    """
    Bounded in-process audit storage.

    Guarantees:
        - Holds at most ``capacity`` records; appending beyond that evicts
          the oldest.
    """

    def __init__(self, capacity: int = DEFAULT_AUDIT_CAPACITY):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._records: deque[AuditEventRecord] = deque(maxlen=capacity)
        self._seq = 0

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: AuditEventRecord) -> AuditEventRecord:
        self._seq += 1
        stored = replace(record, seq=self._seq)
        self._records.append(stored)
        return stored

    def query(self, query: AuditTrailQuery) -> tuple[list[AuditEventRecord], int]:
        matched = _newest_first(r for r in self._records if query.matches(r))
        return matched[query.offset:query.offset + query.limit], len(matched)


class SqlAuditSink:
    """
    Audit storage on the ``billing_audit_events`` table.

    Contract:
        Writes within the caller's transaction (flush only).  Sequence
        numbers come from ``SequenceService``.  Queries only see the newest
        ``retention_limit`` rows; older rows stay in the table.
    """

    def __init__(self, session: Session, retention_limit: int = DEFAULT_AUDIT_CAPACITY):
        if retention_limit <= 0:
            raise ValueError(f"retention_limit must be positive, got {retention_limit}")
        self._session = session
        self._retention_limit = retention_limit
        self._sequences = SequenceService(session)

    def append(self, record: AuditEventRecord) -> AuditEventRecord:
        seq = self._sequences.next_value(SequenceService.AUDIT_EVENT)
        event = AuditEvent(
            seq=seq,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            action=record.action,
            user_id=record.user_id,
            user_email=record.user_email,
            changes=dict(record.changes),
            event_metadata=dict(record.metadata),
            occurred_at=record.occurred_at,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
        )
        self._session.add(event)
        self._session.flush()
        return replace(record, event_id=str(event.id), seq=seq)

    def query(self, query: AuditTrailQuery) -> tuple[list[AuditEventRecord], int]:
        window_floor = (
            self._sequences.current_value(SequenceService.AUDIT_EVENT) - self._retention_limit
        )
        conditions = [AuditEvent.seq > window_floor]
        if query.entity_type:
            conditions.append(AuditEvent.entity_type == query.entity_type)
        if query.entity_id:
            conditions.append(AuditEvent.entity_id == query.entity_id)
        if query.entity_ids:
            conditions.append(AuditEvent.entity_id.in_(query.entity_ids))
        if query.action:
            conditions.append(AuditEvent.action == query.action)
        if query.user_id:
            conditions.append(AuditEvent.user_id == query.user_id)
        if query.date_from:
            conditions.append(AuditEvent.occurred_at >= _as_utc(query.date_from))
        if query.date_to:
            conditions.append(AuditEvent.occurred_at <= _as_utc(query.date_to))

        ordered = (
            select(AuditEvent)
            .where(*conditions)
            .order_by(AuditEvent.occurred_at.desc(), AuditEvent.seq.desc())
        )

        if query.search:
            # Metadata search runs in Python over the bounded live window
            rows = self._session.execute(ordered).scalars().all()
            matched = [
                r for r in (AuditEventRecord.from_model(row) for row in rows)
                if query.matches_search(r)
            ]
            return matched[query.offset:query.offset + query.limit], len(matched)

        total = self._session.execute(
            select(func.count()).select_from(AuditEvent).where(*conditions)
        ).scalar_one()
        rows = self._session.execute(
            ordered.offset(query.offset).limit(query.limit)
        ).scalars().all()
        return [AuditEventRecord.from_model(row) for row in rows], total


class BillingAuditService:
    """
    Records and queries billing audit events.

    Contract:
        ``record_event`` validates the entity type and action, stamps the
        time from the injected clock and appends to the sink.

    Guarantees:
        - Returned records are frozen.
        - ``export_audit_trail`` ignores pagination and returns at most
          ``export_limit`` rows.

    Non-goals:
        - Does NOT commit; with ``SqlAuditSink`` the record becomes durable
          with the caller's transaction.
    """

    def __init__(
        self,
        sink: AuditSink,
        clock: Clock | None = None,
        export_limit: int = DEFAULT_AUDIT_CAPACITY,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self._sink = sink
        self._clock = clock or SystemClock()
        self._export_limit = export_limit
        self._default_page_size = default_page_size

    @property
    def default_page_size(self) -> int:
        return self._default_page_size

    def record_event(
        self,
        entity_type: AuditEntityType | str,
        entity_id: Any,
        action: AuditAction | str,
        user_id: str | None = None,
        changes: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        user_email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEventRecord:
        record = AuditEventRecord(
            event_id=str(uuid4()),
            seq=0,
            entity_type=_parse_enum(entity_type, AuditEntityType, "entity_type"),
            entity_id=str(entity_id),
            action=_parse_enum(action, AuditAction, "action"),
            user_id=user_id or SYSTEM_USER,
            occurred_at=self._clock.now_utc(),
            changes=_freeze(_jsonable(changes)),
            metadata=_freeze(_jsonable(metadata)),
            user_email=user_email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        stored = self._sink.append(record)

        logger.info(
            "audit_event_recorded",
            extra={
                "event_id": stored.event_id,
                "seq": stored.seq,
                "entity_type": stored.entity_type,
                "entity_id": stored.entity_id,
                "action": stored.action,
                "user_id": stored.user_id,
            },
        )
        return stored

    def query_audit_trail(self, query: AuditTrailQuery | None = None) -> AuditTrailResult:
        query = query or AuditTrailQuery(limit=self._default_page_size)
        events, total = self._sink.query(query)
        return AuditTrailResult(
            events=tuple(events),
            total_count=total,
            has_more=query.offset + query.limit < total,
        )

    def export_audit_trail(self, query: AuditTrailQuery | None = None) -> str:
        """
        Render matching events as CSV.

        Every cell is quoted and rows end with a bare newline.  The user
        column falls back to the user id when no email was recorded.
        """
        query = replace(query or AuditTrailQuery(), limit=self._export_limit, offset=0)
        events, _ = self._sink.query(query)

        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for event in events:
            writer.writerow((
                event.occurred_at.isoformat(),
                event.entity_type,
                event.entity_id,
                event.action,
                event.user_email or event.user_id,
                json.dumps(dict(event.changes), default=str),
                json.dumps(dict(event.metadata), default=str),
                event.ip_address or "",
            ))

        logger.info("audit_trail_exported", extra={"row_count": len(events)})
        return buffer.getvalue().removesuffix("\n")

    def get_billing_group_audit_trail(
        self,
        billing_group_id: Any,
        related_entity_ids: Iterable[Any] = (),
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> AuditTrailResult:
        """Events on a billing group and on related entities (its rules, its items)."""
        entity_ids = (str(billing_group_id),) + tuple(str(e) for e in related_entity_ids)
        return self.query_audit_trail(AuditTrailQuery(
            entity_ids=entity_ids,
            date_from=date_from,
            date_to=date_to,
            limit=limit or self._default_page_size,
            offset=offset,
        ))

    def get_audit_statistics(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        entity_type: str | None = None,
    ) -> AuditStatistics:
        events, _ = self._sink.query(AuditTrailQuery(
            entity_type=_parse_enum(entity_type, AuditEntityType, "entity_type"),
            date_from=date_from,
            date_to=date_to,
            limit=self._export_limit,
        ))
        return AuditStatistics(
            total_events=len(events),
            unique_users=len({e.user_id for e in events}),
            unique_entities=len({e.entity_id for e in events}),
            action_counts=MappingProxyType(dict(Counter(e.action for e in events))),
            entity_type_counts=MappingProxyType(dict(Counter(e.entity_type for e in events))),
            recent_activity=tuple(events[:10]),
        )

    # ------------------------------------------------------------------
    # Domain helpers
    # ------------------------------------------------------------------

    def record_billing_group_created(
        self, group, user_id: str | None = None, user_email: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEventRecord:
        return self.record_event(
            AuditEntityType.BILLING_GROUP,
            group.id,
            AuditAction.CREATED,
            user_id=user_id,
            user_email=user_email,
            changes={
                "name": {"from": None, "to": group.name},
                "groupType": {"from": None, "to": group.group_type},
                "status": {"from": None, "to": group.status},
            },
            metadata={"tabId": str(group.tab_id), **(metadata or {})},
        )

    def record_billing_group_updated(
        self, billing_group_id: Any, changes: Mapping[str, Any],
        user_id: str | None = None, user_email: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEventRecord:
        return self.record_event(
            AuditEntityType.BILLING_GROUP,
            billing_group_id,
            AuditAction.UPDATED,
            user_id=user_id,
            user_email=user_email,
            changes=changes,
            metadata=metadata,
        )

    def record_rule_created(
        self, rule, user_id: str | None = None, user_email: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEventRecord:
        return self.record_event(
            AuditEntityType.BILLING_GROUP_RULE,
            rule.id,
            AuditAction.CREATED,
            user_id=user_id,
            user_email=user_email,
            changes={
                "name": {"from": None, "to": rule.name},
                "action": {"from": None, "to": rule.action},
                "priority": {"from": None, "to": rule.priority},
                "conditions": {"from": None, "to": rule.conditions},
            },
            metadata={"billingGroupId": str(rule.billing_group_id), **(metadata or {})},
        )

    def record_line_item_assigned(
        self,
        line_item_id: Any,
        billing_group_id: Any,
        previous_billing_group_id: Any = None,
        user_id: str | None = None,
        user_email: str | None = None,
        is_override: bool = False,
        reason: str | None = None,
        action: AuditAction | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEventRecord:
        new_id = str(billing_group_id) if billing_group_id else None
        previous_id = str(previous_billing_group_id) if previous_billing_group_id else None
        if action is None:
            action = AuditAction.OVERRIDE if is_override else AuditAction.ASSIGNED
        return self.record_event(
            AuditEntityType.LINE_ITEM_ASSIGNMENT,
            line_item_id,
            action,
            user_id=user_id,
            user_email=user_email,
            changes={"billingGroupId": {"from": previous_id, "to": new_id}},
            metadata={
                "isOverride": is_override,
                "reason": reason,
                "previousBillingGroupId": previous_id,
                "newBillingGroupId": new_id,
                **(metadata or {}),
            },
        )

    def record_payment_allocated(
        self, payment_id: Any, tab_id: Any, method: str, allocations,
        user_id: str | None = None,
    ) -> AuditEventRecord:
        return self.record_event(
            AuditEntityType.PAYMENT_ALLOCATION,
            payment_id,
            AuditAction.ALLOCATED,
            user_id=user_id,
            changes={
                "billingGroupAllocations": {
                    "from": None,
                    "to": [a.to_metadata() for a in allocations],
                },
            },
            metadata={"tabId": str(tab_id), "allocationMethod": method},
        )

    def record_allocation_reversed(
        self, payment_id: Any, tab_id: Any, restored, user_id: str | None = None,
        reason: str | None = None,
    ) -> AuditEventRecord:
        return self.record_event(
            AuditEntityType.PAYMENT_ALLOCATION,
            payment_id,
            AuditAction.REVERSED,
            user_id=user_id,
            changes={
                "billingGroupAllocations": {
                    "from": [a.to_metadata() for a in restored],
                    "to": None,
                },
            },
            metadata={"tabId": str(tab_id), "reason": reason},
        )


def _jsonable(mapping: Mapping[str, Any] | None) -> dict[str, Any]:
    """Round-trip through JSON so stored and in-memory records look alike."""
    if not mapping:
        return {}
    return json.loads(json.dumps(dict(mapping), default=str))
