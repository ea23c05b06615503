"""
Tests for BillingAuditService and its sinks.

Covers:
- Recording (validation, clock stamping, JSON-safe payloads)
- Retention: in-memory capacity and SQL retention window
- Query filters, ordering and pagination
- HTTP query parameter parsing
- CSV export format
- Statistics
"""

import csv
import io
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.exceptions import ValidationError
from billing_kernel.models.audit_event import AuditAction, AuditEntityType
from billing_kernel.services.audit_service import (
    CSV_HEADERS,
    AuditTrailQuery,
    BillingAuditService,
    InMemoryAuditSink,
    SqlAuditSink,
)
from tests.conftest import TEST_NOW

GROUP = AuditEntityType.BILLING_GROUP
ITEM = AuditEntityType.LINE_ITEM_ASSIGNMENT


@pytest.fixture
def memory_audit(clock) -> BillingAuditService:
    return BillingAuditService(InMemoryAuditSink(capacity=100), clock)


def seed(audit: BillingAuditService, clock: DeterministicClock) -> None:
    """Five events one minute apart, oldest first."""
    rows = [
        (GROUP, "bg-1", AuditAction.CREATED, "alice", "alice@example.com", {"tabId": "tab-1"}),
        (GROUP, "bg-2", AuditAction.CREATED, "alice", "alice@example.com", {"tabId": "tab-1"}),
        (ITEM, "li-1", AuditAction.ASSIGNED, "bob", None, {"newBillingGroupId": "bg-1"}),
        (ITEM, "li-1", AuditAction.OVERRIDE, "bob", None, {"reason": "Guest Request"}),
        (GROUP, "bg-2", AuditAction.UPDATED, None, None, {"tabId": "tab-2"}),
    ]
    for entity_type, entity_id, action, user_id, email, metadata in rows:
        audit.record_event(entity_type, entity_id, action, user_id=user_id, user_email=email,
                           metadata=metadata)
        clock.advance(60)


class TestRecordEvent:
    def test_stamps_clock_and_defaults_user(self, memory_audit):
        record = memory_audit.record_event("billing_group", "bg-1", "created")
        assert record.occurred_at == TEST_NOW
        assert record.user_id == "system"
        assert record.seq == 1

    def test_payload_made_json_safe(self, memory_audit):
        record = memory_audit.record_event(
            GROUP, "bg-1", AuditAction.UPDATED,
            changes={"balance": {"from": Decimal("1.50"), "to": Decimal("2.00")}},
        )
        assert record.changes["balance"] == {"from": "1.50", "to": "2.00"}
        with pytest.raises(TypeError):
            record.metadata["x"] = 1

    @pytest.mark.parametrize("entity_type,action,field", [
        ("invoice", "created", "entity_type"),
        ("billing_group", "exploded", "action"),
    ])
    def test_unknown_enum_values(self, memory_audit, entity_type, action, field):
        with pytest.raises(ValidationError) as exc_info:
            memory_audit.record_event(entity_type, "x", action)
        assert exc_info.value.field == field

    def test_logged(self, memory_audit, captured_logs):
        memory_audit.record_event(GROUP, "bg-1", AuditAction.CREATED)
        record = next(r for r in captured_logs() if r["message"] == "audit_event_recorded")
        assert record["entity_id"] == "bg-1"


class TestRetention:
    def test_memory_sink_evicts_oldest(self, clock):
        sink = InMemoryAuditSink(capacity=3)
        audit = BillingAuditService(sink, clock)
        for i in range(5):
            audit.record_event(GROUP, f"bg-{i}", AuditAction.CREATED)
            clock.advance(1)

        result = audit.query_audit_trail()
        assert len(sink) == 3
        assert [e.entity_id for e in result.events] == ["bg-4", "bg-3", "bg-2"]

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            InMemoryAuditSink(capacity=0)

    def test_sql_sink_assigns_sequence(self, session, clock):
        audit = BillingAuditService(SqlAuditSink(session), clock)
        seqs = [audit.record_event(GROUP, "bg-1", AuditAction.UPDATED).seq for _ in range(3)]
        assert seqs == [1, 2, 3]

    def test_sql_retention_window(self, session, clock):
        audit = BillingAuditService(SqlAuditSink(session, retention_limit=2), clock)
        for i in range(4):
            audit.record_event(GROUP, f"bg-{i}", AuditAction.CREATED)

        result = audit.query_audit_trail()
        assert result.total_count == 2
        # same timestamp, so seq decides
        assert [e.entity_id for e in result.events] == ["bg-3", "bg-2"]

    def test_sql_round_trip(self, session, clock):
        audit = BillingAuditService(SqlAuditSink(session), clock)
        audit.record_event(ITEM, "li-1", AuditAction.ASSIGNED, user_id="u", user_email="u@example.com",
                           metadata={"isOverride": False}, ip_address="10.0.0.1")

        stored = audit.query_audit_trail().events[0]
        assert stored.occurred_at == TEST_NOW
        assert stored.metadata == {"isOverride": False}
        assert stored.ip_address == "10.0.0.1"


@pytest.fixture(params=["memory", "sql"])
def seeded_audit(request, clock):
    if request.param == "memory":
        audit = BillingAuditService(InMemoryAuditSink(), clock)
    else:
        audit = BillingAuditService(SqlAuditSink(request.getfixturevalue("session")), clock)
    seed(audit, clock)
    return audit


class TestQuery:
    def test_newest_first(self, seeded_audit):
        result = seeded_audit.query_audit_trail()
        assert [e.action for e in result.events] == [
            "updated", "override", "assigned", "created", "created",
        ]
        assert result.total_count == 5
        assert not result.has_more

    def test_filters(self, seeded_audit):
        by_type = seeded_audit.query_audit_trail(AuditTrailQuery(entity_type=ITEM.value))
        by_entity = seeded_audit.query_audit_trail(AuditTrailQuery(entity_id="bg-2"))
        by_action = seeded_audit.query_audit_trail(AuditTrailQuery(action="created"))
        by_user = seeded_audit.query_audit_trail(AuditTrailQuery(user_id="system"))

        assert by_type.total_count == 2
        assert by_entity.total_count == 2
        assert by_action.total_count == 2
        assert [e.entity_id for e in by_user.events] == ["bg-2"]

    def test_date_range(self, seeded_audit):
        result = seeded_audit.query_audit_trail(AuditTrailQuery(
            date_from=TEST_NOW + timedelta(minutes=1),
            date_to=TEST_NOW + timedelta(minutes=3),
        ))
        assert [e.action for e in result.events] == ["override", "assigned", "created"]

    def test_pagination(self, seeded_audit):
        first = seeded_audit.query_audit_trail(AuditTrailQuery(limit=2))
        last = seeded_audit.query_audit_trail(AuditTrailQuery(limit=2, offset=4))

        assert len(first.events) == 2 and first.has_more
        assert len(last.events) == 1 and not last.has_more
        assert last.total_count == 5

    def test_search_is_case_insensitive(self, seeded_audit):
        by_email = seeded_audit.query_audit_trail(AuditTrailQuery(search="ALICE@"))
        by_metadata = seeded_audit.query_audit_trail(AuditTrailQuery(search="guest request"))
        by_entity = seeded_audit.query_audit_trail(AuditTrailQuery(search="li-"))

        assert by_email.total_count == 2
        assert [e.action for e in by_metadata.events] == ["override"]
        assert by_entity.total_count == 2

    def test_billing_group_trail(self, seeded_audit):
        result = seeded_audit.get_billing_group_audit_trail("bg-1", related_entity_ids=["li-1"])
        assert result.total_count == 3


class TestQueryParams:
    def test_parsing(self):
        query = AuditTrailQuery.from_query_params({
            "entity_type": "billing_group",
            "action": "created",
            "user_id": "alice",
            "date_from": "2024-01-01",
            "date_to": "2024-01-31",
            "limit": "20",
            "offset": "40",
        })
        assert query.entity_type == "billing_group"
        assert query.limit == 20
        assert query.offset == 40
        assert query.date_from == datetime(2024, 1, 1, tzinfo=timezone.utc)
        # a bare date_to covers the whole day
        assert query.date_to.date() == date(2024, 1, 31)
        assert query.date_to.hour == 23 and query.date_to.minute == 59

    def test_defaults(self):
        query = AuditTrailQuery.from_query_params({}, default_limit=25)
        assert query.limit == 25
        assert query.offset == 0
        assert query.entity_type is None

    def test_limit_capped(self):
        assert AuditTrailQuery.from_query_params({"limit": "99999"}, max_limit=500).limit == 500

    def test_timestamp_with_zone(self):
        query = AuditTrailQuery.from_query_params({"date_from": "2024-01-03T09:00:00-05:00"})
        assert query.date_from == TEST_NOW

    @pytest.mark.parametrize("params,field", [
        ({"entity_type": "invoice"}, "entity_type"),
        ({"action": "teleported"}, "action"),
        ({"limit": "ten"}, "limit"),
        ({"limit": "0"}, "limit"),
        ({"offset": "-1"}, "offset"),
        ({"date_from": "yesterday"}, "date_from"),
    ])
    def test_invalid(self, params, field):
        with pytest.raises(ValidationError) as exc_info:
            AuditTrailQuery.from_query_params(params)
        assert exc_info.value.field == field


class TestExport:
    def test_csv_format(self, memory_audit, clock):
        seed(memory_audit, clock)

        text = memory_audit.export_audit_trail(AuditTrailQuery(entity_type=ITEM.value, limit=1))

        assert not text.endswith("\n")
        lines = text.split("\n")
        assert lines[0] == ",".join(f'"{h}"' for h in CSV_HEADERS)
        rows = list(csv.reader(io.StringIO(text)))
        assert len(rows) == 3
        override = rows[1]
        assert override[1] == "line_item_assignment"
        assert override[3] == "override"
        # no email recorded: falls back to the user id
        assert override[4] == "bob"
        assert override[6] == '{"reason": "Guest Request"}'

    def test_every_cell_quoted(self, memory_audit):
        memory_audit.record_event(GROUP, "bg-1", AuditAction.CREATED, user_email="a@example.com")
        row = memory_audit.export_audit_trail().split("\n")[1]
        assert row.startswith('"2024-01-03T14:00:00+00:00","billing_group","bg-1","created"')
        assert row.endswith(',""')

    def test_export_limit(self, clock):
        audit = BillingAuditService(InMemoryAuditSink(), clock, export_limit=2)
        seed(audit, clock)
        assert len(audit.export_audit_trail().split("\n")) == 3


class TestStatistics:
    def test_counts(self, memory_audit, clock):
        seed(memory_audit, clock)

        stats = memory_audit.get_audit_statistics()

        assert stats.total_events == 5
        assert stats.unique_users == 3
        assert stats.unique_entities == 3
        assert stats.action_counts == {"created": 2, "assigned": 1, "override": 1, "updated": 1}
        assert stats.entity_type_counts == {"billing_group": 3, "line_item_assignment": 2}
        assert stats.recent_activity[0].action == "updated"

    def test_filtered_by_entity_type(self, memory_audit, clock):
        seed(memory_audit, clock)
        stats = memory_audit.get_audit_statistics(entity_type="line_item_assignment")
        assert stats.total_events == 2
        assert stats.unique_users == 1
