"""
Config -> Kernel Bridges.

Functions that turn a BillingConfig into configured kernel services. They
live in billing_config (the producer) because the kernel must NEVER import
billing_config.

Usage:
    from billing_config import get_active_config
    from billing_config.bridges import build_services, init_database

    config = get_active_config()
    factory = init_database(config)
    with transaction_scope(factory) as session:
        services = build_services(config, session)
        services.allocation.allocate(payment_id, group_ids, "proportional")
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from billing_config.schema import BillingConfig
from billing_kernel.db.engine import get_session_factory, init_engine_from_url
from billing_kernel.db.immutability import register_immutability_listeners
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import configure_logging
from billing_kernel.services.allocation_service import PaymentAllocationService
from billing_kernel.services.assignment_service import LineItemAssignmentService
from billing_kernel.services.audit_service import BillingAuditService, SqlAuditSink
from billing_kernel.services.balance_tracker import BillingGroupBalanceTracker
from billing_kernel.services.billing_group_service import BillingGroupService
from billing_kernel.services.notifications import NotificationSink
from billing_kernel.services.payment_events import PaymentEventHandler
from billing_kernel.services.rule_service import BillingGroupRuleService


def init_database(config: BillingConfig, echo: bool = False) -> sessionmaker[Session]:
    """Configure logging, the engine and the append-only listeners."""
    configure_logging(level=config.logging.level)
    init_engine_from_url(config.database_url, echo=echo)
    register_immutability_listeners()
    return get_session_factory()


def build_audit_service(
    config: BillingConfig, session: Session, clock: Clock | None = None
) -> BillingAuditService:
    return BillingAuditService(
        SqlAuditSink(session, retention_limit=config.audit.retention_limit),
        clock,
        export_limit=config.audit.export_limit,
        default_page_size=config.audit.default_page_size,
    )


@dataclass(frozen=True)
class BillingServices:
    """Services sharing one session, clock, audit recorder and balance tracker."""

    audit: BillingAuditService
    balances: BillingGroupBalanceTracker
    billing_groups: BillingGroupService
    rules: BillingGroupRuleService
    assignment: LineItemAssignmentService
    allocation: PaymentAllocationService


def build_services(
    config: BillingConfig,
    session: Session,
    clock: Clock | None = None,
    notifications: NotificationSink | None = None,
) -> BillingServices:
    clock = clock or SystemClock()
    audit = build_audit_service(config, session, clock)
    balances = BillingGroupBalanceTracker(session, clock)
    return BillingServices(
        audit=audit,
        balances=balances,
        billing_groups=BillingGroupService(session, clock, audit=audit, balance_tracker=balances),
        rules=BillingGroupRuleService(
            session, clock, audit=audit, default_priority=config.rules.default_priority
        ),
        assignment=LineItemAssignmentService(
            session,
            clock,
            audit=audit,
            notifications=notifications,
            timezone=config.timezone,
            balance_tracker=balances,
        ),
        allocation=PaymentAllocationService(
            session,
            clock,
            audit=audit,
            checkout_method=config.allocation.checkout_method,
            balance_tracker=balances,
        ),
    )


def build_payment_event_handler(
    config: BillingConfig,
    session_factory: sessionmaker[Session] | None = None,
    clock: Clock | None = None,
) -> PaymentEventHandler:
    clock = clock or SystemClock()
    return PaymentEventHandler(
        session_factory,
        clock,
        allocation_service_factory=lambda session: build_services(config, session, clock).allocation,
    )
