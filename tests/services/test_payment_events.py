"""
Tests for PaymentEventHandler.

Each event runs in its own transaction, so these tests set data up in a
committed transaction and check results in a fresh one instead of using
the shared ``session`` fixture.
"""

from decimal import Decimal
from uuid import UUID

import pytest
from sqlalchemy import func, select

from billing_kernel.db.engine import transaction_scope
from billing_kernel.db.types import round_money
from billing_kernel.domain.dtos import GroupStatus, GroupType, PaymentStatus
from billing_kernel.exceptions import InsufficientBalanceError, PaymentNotFoundError, ValidationError
from billing_kernel.models.audit_event import AuditEvent
from billing_kernel.models.billing_group import BillingGroup
from billing_kernel.models.payment import Payment, PaymentAllocationBatch
from billing_kernel.models.tab import Tab
from billing_kernel.services.payment_events import (
    CHARGE_REFUNDED,
    PAYMENT_SUCCEEDED,
    PaymentEventHandler,
    event_metadata,
)


def stripe_event(event_type: str, **metadata) -> dict:
    return {"type": event_type, "data": {"object": {"metadata": metadata}}}


@pytest.fixture
def handler(session_factory, clock) -> PaymentEventHandler:
    return PaymentEventHandler(session_factory, clock)


@pytest.fixture
def checkout(session_factory):
    """A tab with two groups and a pending 50.00 payment, committed."""
    with transaction_scope(session_factory) as s:
        tab = Tab(organization_id="org-1", currency="USD")
        s.add(tab)
        s.flush()
        groups = [
            BillingGroup(
                tab_id=tab.id,
                name=name,
                group_type=GroupType.STANDARD.value,
                status=GroupStatus.ACTIVE.value,
                current_balance=round_money(balance),
                deposit_applied=round_money(0),
            )
            for name, balance in (("Company", "75.00"), ("Personal", "25.00"))
        ]
        s.add_all(groups)
        payment = Payment(
            tab_id=tab.id,
            amount=round_money("50.00"),
            currency="USD",
            status=PaymentStatus.PENDING.value,
            processor="stripe",
        )
        s.add(payment)
        s.flush()
        return {
            "tab_id": str(tab.id),
            "payment_id": str(payment.id),
            "group_ids": [str(g.id) for g in groups],
        }


def _reload(session_factory, payment_id):
    with transaction_scope(session_factory) as s:
        payment = s.get(Payment, UUID(str(payment_id)))
        groups = s.execute(select(BillingGroup).order_by(BillingGroup.name)).scalars().all()
        batches = s.execute(select(func.count()).select_from(PaymentAllocationBatch)).scalar_one()
        return payment, {g.name: g.current_balance for g in groups}, batches


def succeeded(checkout, **extra) -> dict:
    return stripe_event(
        PAYMENT_SUCCEEDED,
        paymentId=checkout["payment_id"],
        tabId=checkout["tab_id"],
        billingGroupIds=",".join(checkout["group_ids"]),
        **extra,
    )


class TestPaymentSucceeded:
    def test_marks_succeeded_and_allocates(self, handler, session_factory, checkout):
        outcome = handler.handle(succeeded(checkout))

        assert outcome.total_allocated == Decimal("50.00")
        payment, balances, batches = _reload(session_factory, outcome.payment_id)
        assert payment.status == PaymentStatus.SUCCEEDED.value
        assert balances == {"Company": Decimal("37.50"), "Personal": Decimal("12.50")}
        assert payment.payment_metadata["allocationMethod"] == "proportional"
        assert batches == 1

    def test_redelivery_is_skipped(self, handler, session_factory, checkout, captured_logs):
        handler.handle(succeeded(checkout))
        assert handler.handle(succeeded(checkout)) is None

        _, balances, batches = _reload(session_factory, checkout["payment_id"])
        assert balances == {"Company": Decimal("37.50"), "Personal": Decimal("12.50")}
        assert batches == 1
        assert any(r["message"] == "payment_already_allocated_skipped" for r in captured_logs())

    def test_without_billing_groups_only_marks_succeeded(self, handler, session_factory, checkout):
        event = stripe_event(PAYMENT_SUCCEEDED, paymentId=checkout["payment_id"])
        assert handler.handle(event) is None

        payment, balances, batches = _reload(session_factory, checkout["payment_id"])
        assert payment.status == PaymentStatus.SUCCEEDED.value
        assert balances == {"Company": Decimal("75.00"), "Personal": Decimal("25.00")}
        assert batches == 0

    def test_failed_allocation_rolls_back_status(self, handler, session_factory, checkout):
        event = stripe_event(
            PAYMENT_SUCCEEDED,
            paymentId=checkout["payment_id"],
            billingGroupIds=checkout["group_ids"][1],
        )
        with pytest.raises(InsufficientBalanceError):
            handler.handle(event)

        payment, balances, batches = _reload(session_factory, checkout["payment_id"])
        assert payment.status == PaymentStatus.PENDING.value
        assert balances["Personal"] == Decimal("25.00")
        assert batches == 0
        with transaction_scope(session_factory) as s:
            assert s.execute(select(func.count()).select_from(AuditEvent)).scalar_one() == 0

    def test_missing_payment_id(self, handler):
        with pytest.raises(ValidationError) as exc_info:
            handler.handle(stripe_event(PAYMENT_SUCCEEDED))
        assert exc_info.value.field == "paymentId"

    def test_unknown_payment(self, handler, db_engine):
        with pytest.raises(PaymentNotFoundError):
            handler.handle(stripe_event(PAYMENT_SUCCEEDED, paymentId="00000000-0000-0000-0000-000000000000"))


class TestChargeRefunded:
    def test_reverses_allocation(self, handler, session_factory, checkout):
        handler.handle(succeeded(checkout))

        outcome = handler.handle(stripe_event(CHARGE_REFUNDED, paymentId=checkout["payment_id"]))

        assert len(outcome.restored) == 2
        payment, balances, _ = _reload(session_factory, checkout["payment_id"])
        assert payment.status == PaymentStatus.REFUNDED.value
        assert balances == {"Company": Decimal("75.00"), "Personal": Decimal("25.00")}
        assert "allocationReversedAt" in payment.payment_metadata

    def test_redelivered_refund_is_noop(self, handler, session_factory, checkout):
        handler.handle(succeeded(checkout))
        refund = stripe_event(CHARGE_REFUNDED, paymentId=checkout["payment_id"])
        handler.handle(refund)

        assert handler.handle(refund) is None
        _, balances, _ = _reload(session_factory, checkout["payment_id"])
        assert balances == {"Company": Decimal("75.00"), "Personal": Decimal("25.00")}

    def test_refund_without_allocation(self, handler, session_factory, checkout):
        assert handler.handle(stripe_event(CHARGE_REFUNDED, paymentId=checkout["payment_id"])) is None
        payment, _, _ = _reload(session_factory, checkout["payment_id"])
        assert payment.status == PaymentStatus.REFUNDED.value


class TestDispatch:
    def test_other_event_types_ignored(self, handler):
        assert handler.handle({"type": "customer.created"}) is None

    def test_metadata_lookup(self):
        assert event_metadata({"data": {"object": {"metadata": {"a": "1"}}}}) == {"a": "1"}
        assert event_metadata({"metadata": {"b": "2"}}) == {"b": "2"}
        assert event_metadata({}) == {}
