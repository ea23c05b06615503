"""
PaymentEventHandler -- applies payment processor events to allocations.

Responsibility:
    Translates ``payment_intent.succeeded`` and ``charge.refunded`` events
    (already signature-verified by the web layer) into payment status
    changes plus allocation or reversal.

Architecture position:
    Kernel > Services.  Unlike the other services it owns its transaction:
    each event runs in its own ``transaction_scope`` over the injected
    session factory, so an event is applied completely or not at all.

Invariants enforced:
    - Redelivered events are harmless: an already-allocated payment is not
      allocated again, an already-reversed allocation is not reversed
      again.
    - The payment id comes from the event's custom metadata
      (``paymentId``); billing group selection from ``billingGroupIds``.

Failure modes:
    - ValidationError when the event carries no payment id.
    - PaymentNotFoundError for an unknown payment.
    - Any allocation error propagates after the transaction rolled back.
"""

from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from billing_kernel.db.engine import transaction_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import AllocationOutcome, PaymentStatus, ReversalOutcome
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.selectors.payment_selector import REVERSED_AT_KEY, allocations_from_metadata
from billing_kernel.services.allocation_service import PaymentAllocationService

logger = get_logger("services.payment_events")

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
CHARGE_REFUNDED = "charge.refunded"

_SETTLEABLE = frozenset({PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value})


def event_metadata(event: Mapping[str, Any]) -> dict[str, Any]:
    """Custom metadata of a processor event (``data.object.metadata``)."""
    data = event.get("data") or {}
    obj = data.get("object") or {}
    return dict(obj.get("metadata") or event.get("metadata") or {})


class PaymentEventHandler:
    """
    Dispatches processor events by type.

    Non-goals:
        - Does NOT verify webhook signatures.
        - Does NOT create payments; they exist before checkout completes.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        allocation_service_factory: Callable[[Session], PaymentAllocationService] | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._allocation_service_factory = allocation_service_factory or (
            lambda session: PaymentAllocationService(session, self._clock)
        )

    def handle(self, event: Mapping[str, Any]) -> AllocationOutcome | ReversalOutcome | None:
        event_type = event.get("type")
        if event_type == PAYMENT_SUCCEEDED:
            return self.handle_payment_succeeded(event)
        if event_type == CHARGE_REFUNDED:
            return self.handle_charge_refunded(event)
        logger.debug("payment_event_ignored", extra={"event_type": event_type})
        return None

    @staticmethod
    def _payment_id(metadata: Mapping[str, Any], event_type: str) -> str:
        payment_id = metadata.get("paymentId") or metadata.get("payment_id")
        if not payment_id:
            raise ValidationError(f"{event_type} event carries no paymentId", field="paymentId")
        return str(payment_id)

    def handle_payment_succeeded(self, event: Mapping[str, Any]) -> AllocationOutcome | None:
        metadata = event_metadata(event)
        payment_id = self._payment_id(metadata, PAYMENT_SUCCEEDED)

        with LogContext.bind(payment_id=payment_id, tab_id=metadata.get("tabId")):
            with transaction_scope(self._session_factory) as session:
                service = self._allocation_service_factory(session)
                payment = service.get_payment(payment_id, for_update=True)

                if payment.status in _SETTLEABLE:
                    payment.status = PaymentStatus.SUCCEEDED.value
                    session.flush()
                    logger.info("payment_marked_succeeded")
                elif payment.status != PaymentStatus.SUCCEEDED.value:
                    logger.warning(
                        "payment_event_status_conflict",
                        extra={"event_type": PAYMENT_SUCCEEDED, "status": payment.status},
                    )
                    return None

                if allocations_from_metadata(payment.payment_metadata):
                    logger.info("payment_already_allocated_skipped")
                    return None

                return service.allocate_from_checkout(payment.id, metadata)

    def handle_charge_refunded(self, event: Mapping[str, Any]) -> ReversalOutcome | None:
        metadata = event_metadata(event)
        payment_id = self._payment_id(metadata, CHARGE_REFUNDED)

        with LogContext.bind(payment_id=payment_id, tab_id=metadata.get("tabId")):
            with transaction_scope(self._session_factory) as session:
                service = self._allocation_service_factory(session)
                payment = service.get_payment(payment_id, for_update=True)

                payment.status = PaymentStatus.REFUNDED.value
                session.flush()
                logger.info("payment_marked_refunded")

                stored = payment.payment_metadata or {}
                if not allocations_from_metadata(stored) or stored.get(REVERSED_AT_KEY):
                    return None
                return service.reverse_payment_allocation(payment.id, reason=CHARGE_REFUNDED)
