"""
Pytest fixtures for the billing kernel test suite.

Provides:
- A fresh database per test (in-memory SQLite by default)
- Deterministic clock and service fixtures
- Factories for tabs, billing groups, line items, rules and payments
- Captured structured logs

Environment Variables:
- DATABASE_URL: run the suite against another database (e.g. PostgreSQL).
  Tables are created before and dropped after every test.
"""

import json
import logging
import os
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any

import pytest
from sqlalchemy.orm import Session, sessionmaker

from billing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from billing_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from billing_kernel.db.types import line_total, round_money
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.domain.dtos import AssignmentStatus, GroupStatus, GroupType, PaymentStatus
from billing_kernel.domain.rules import RuleAction
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.models.billing_group import BillingGroup, BillingGroupRuleModel
from billing_kernel.models.payment import Payment
from billing_kernel.models.tab import LineItem, Tab
from billing_kernel.services.allocation_service import PaymentAllocationService
from billing_kernel.services.assignment_service import LineItemAssignmentService
from billing_kernel.services.audit_service import BillingAuditService, SqlAuditSink
from billing_kernel.services.balance_tracker import BillingGroupBalanceTracker
from billing_kernel.services.billing_group_service import BillingGroupService
from billing_kernel.services.notifications import InMemoryNotificationSink
from billing_kernel.services.rule_service import BillingGroupRuleService

DEFAULT_TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"

TEST_USER_ID = "user-test"

# Wednesday 2024-01-03 14:00 UTC
TEST_NOW = datetime(2024, 1, 3, 14, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, allocation_service):
            allocation_service.allocate(...)
            logs = captured_logs()
            assert any(r["message"] == "payment_allocated" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def log_messages(records: list[dict]) -> list[str]:
    return [r["message"] for r in records]


# =============================================================================
# Database
# =============================================================================


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_TEST_DATABASE_URL)


@pytest.fixture
def db_engine():
    """One engine per test; tables created up front and dropped at teardown."""
    engine = init_engine_from_url(get_database_url())
    create_tables()
    register_immutability_listeners()
    yield engine
    unregister_immutability_listeners()
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker[Session]:
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """Session whose uncommitted work is rolled back at teardown."""
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Clock and services
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(TEST_NOW)


@pytest.fixture
def audit_service(session, clock) -> BillingAuditService:
    return BillingAuditService(SqlAuditSink(session), clock)


@pytest.fixture
def balance_tracker(session, clock) -> BillingGroupBalanceTracker:
    return BillingGroupBalanceTracker(session, clock)


@pytest.fixture
def notifications() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def billing_group_service(session, clock, audit_service, balance_tracker) -> BillingGroupService:
    return BillingGroupService(session, clock, audit=audit_service, balance_tracker=balance_tracker)


@pytest.fixture
def rule_service(session, clock, audit_service) -> BillingGroupRuleService:
    return BillingGroupRuleService(session, clock, audit=audit_service)


@pytest.fixture
def assignment_service(
    session, clock, audit_service, notifications, balance_tracker
) -> LineItemAssignmentService:
    return LineItemAssignmentService(
        session,
        clock,
        audit=audit_service,
        notifications=notifications,
        balance_tracker=balance_tracker,
    )


@pytest.fixture
def allocation_service(session, clock, audit_service, balance_tracker) -> PaymentAllocationService:
    return PaymentAllocationService(
        session, clock, audit=audit_service, balance_tracker=balance_tracker
    )


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_tab(session):
    def _make(organization_id: str = "org-1", currency: str = "USD", **kwargs: Any) -> Tab:
        tab = Tab(organization_id=organization_id, currency=currency, **kwargs)
        session.add(tab)
        session.flush()
        return tab

    return _make


@pytest.fixture
def tab(make_tab) -> Tab:
    return make_tab()


@pytest.fixture
def make_group(session):
    """Billing group row written directly, bypassing services and audit."""

    def _make(
        tab: Tab,
        name: str = "Group",
        balance: Decimal | str = "0.00",
        group_type: GroupType = GroupType.STANDARD,
        status: GroupStatus = GroupStatus.ACTIVE,
        credit_limit: Decimal | str | None = None,
        deposit_amount: Decimal | str | None = None,
    ) -> BillingGroup:
        group = BillingGroup(
            tab_id=tab.id,
            name=name,
            group_type=group_type.value,
            status=status.value,
            current_balance=round_money(balance),
            deposit_amount=round_money(deposit_amount) if deposit_amount is not None else None,
            deposit_applied=round_money(0),
            credit_limit=round_money(credit_limit) if credit_limit is not None else None,
        )
        session.add(group)
        session.flush()
        return group

    return _make


@pytest.fixture
def make_line_item(session):
    """Line item row written directly; the rule engine does not run."""

    def _make(
        tab: Tab,
        unit_price: Decimal | str = "10.00",
        quantity: Decimal | str | int = 1,
        description: str = "Item",
        category: str | None = None,
        metadata: dict | None = None,
    ) -> LineItem:
        item = LineItem(
            tab_id=tab.id,
            description=description,
            category=category,
            quantity=Decimal(str(quantity)),
            unit_price=round_money(unit_price),
            total_price=line_total(quantity, unit_price),
            assignment_status=AssignmentStatus.UNASSIGNED.value,
            item_metadata=metadata or {},
        )
        session.add(item)
        session.flush()
        return item

    return _make


@pytest.fixture
def make_rule(rule_service, clock):
    """Create a rule through the rule service, one clock second apart."""

    def _make(
        group: BillingGroup,
        name: str = "Rule",
        conditions: dict | None = None,
        action: RuleAction = RuleAction.AUTO_ASSIGN,
        priority: int = 100,
        is_active: bool = True,
    ) -> BillingGroupRuleModel:
        clock.advance(1)
        return rule_service.create_rule(
            group.id,
            name,
            conditions=conditions,
            action=action,
            priority=priority,
            is_active=is_active,
        )

    return _make


@pytest.fixture
def make_payment(session):
    def _make(
        tab: Tab,
        amount: Decimal | str = "100.00",
        status: PaymentStatus = PaymentStatus.SUCCEEDED,
        currency: str = "USD",
        metadata: dict | None = None,
    ) -> Payment:
        payment = Payment(
            tab_id=tab.id,
            amount=round_money(amount),
            currency=currency,
            status=status.value,
            processor="stripe",
            payment_metadata=metadata,
        )
        session.add(payment)
        session.flush()
        return payment

    return _make
