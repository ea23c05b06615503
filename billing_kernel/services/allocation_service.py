"""
PaymentAllocationService -- splits a settled payment across billing groups.

Responsibility:
    Loads the payment and the selected billing groups, asks the pure
    BillingGroupAllocationEngine how to split the payment, and persists
    the decision: one allocation batch, one allocation row per funded
    group, reduced group balances, allocation metadata on the payment and
    an audit event.  Also reverses an allocation and reads allocations
    back per tab.

Architecture position:
    Kernel > Services -- imperative shell around
    ``billing_engines.allocation``.  Flushes only; the caller's
    ``transaction_scope`` commits or rolls back the whole operation.

Invariants enforced:
    - Conservation: sum(allocation amounts) == payment.amount.
    - Caps: no group receives more than its balance at allocation time.
    - Idempotency: at most one allocation batch per payment (checked
      inside the transaction, backed by a UNIQUE constraint).
    - All-or-nothing: every check runs before the first write; any
      failure after a write propagates and the caller rolls back.
    - Reversal appends (reversed_at stamps, audit event); nothing is
      deleted.
    - Rows are read with SELECT ... FOR UPDATE so concurrent allocations
      against the same groups serialize on PostgreSQL.

Failure modes:
    - PaymentNotFoundError, PaymentNotSettledError (NotFoundError).
    - NoBillingGroupsError, InsufficientBalanceError,
      PaymentAlreadyAllocatedError, AllocationNotFoundError,
      AllocationAlreadyReversedError (BusinessRuleError).
    - ValidationError for an unknown allocation method.

Audit relevance:
    ``allocated`` and ``reversed`` events on the ``payment_allocation``
    entity carry the per-group amounts.
"""

from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engines.allocation import (
    AllocationMethod,
    AllocationTarget,
    BillingGroupAllocationEngine,
)
from billing_kernel.db.types import round_money
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.dtos import (
    AllocationOutcome,
    BillingGroupSnapshot,
    GroupAllocation,
    GroupStatus,
    ReversalOutcome,
    TabPaymentAllocation,
)
from billing_kernel.domain.values import Money
from billing_kernel.exceptions import (
    AllocationAlreadyReversedError,
    AllocationNotFoundError,
    BillingGroupNotFoundError,
    InsufficientBalanceError,
    NoBillingGroupsError,
    PaymentAlreadyAllocatedError,
    PaymentNotFoundError,
    PaymentNotSettledError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.billing_group import BillingGroup
from billing_kernel.models.payment import Payment, PaymentAllocation, PaymentAllocationBatch
from billing_kernel.selectors.payment_selector import (
    ALLOCATED_AT_KEY,
    ALLOCATIONS_KEY,
    METHOD_KEY,
    REVERSED_AT_KEY,
    PaymentSelector,
    allocations_from_metadata,
)
from billing_kernel.services.audit_service import BillingAuditService, SqlAuditSink
from billing_kernel.services.balance_tracker import BillingGroupBalanceTracker
from billing_kernel.services.base import BaseService

logger = get_logger("services.allocation")

CHECKOUT_GROUP_KEYS = ("billingGroupIds", "billing_group_ids")


def parse_billing_group_ids(raw: Any) -> list[str]:
    """Comma-separated string (or list) of ids -> list without blanks or repeats."""
    if raw is None:
        return []
    parts = raw.split(",") if isinstance(raw, str) else [str(p) for p in raw]
    ids: list[str] = []
    for part in parts:
        part = part.strip()
        if part and part not in ids:
            ids.append(part)
    return ids


def _method(value: AllocationMethod | str) -> AllocationMethod:
    try:
        return AllocationMethod(value)
    except ValueError:
        raise ValidationError(f"Unknown allocation method: {value!r}", field="method") from None


def _parse_uuid(value: Any) -> UUID | None:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        return None


class PaymentAllocationService(BaseService[Payment]):
    """
    Payment allocation and reversal.

    Contract:
        ``allocate`` either persists a complete allocation of the payment
        or raises without having written anything the caller must keep.

    Non-goals:
        - Does NOT decide the split (the allocation engine does).
        - Does NOT handle partial refunds; a refund reverses the whole
          allocation.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        audit: BillingAuditService | None = None,
        engine: BillingGroupAllocationEngine | None = None,
        checkout_method: AllocationMethod | str = AllocationMethod.PROPORTIONAL,
        balance_tracker: BillingGroupBalanceTracker | None = None,
    ):
        super().__init__(session, clock)
        self._audit = audit or BillingAuditService(SqlAuditSink(session), self._clock)
        self._engine = engine or BillingGroupAllocationEngine()
        self._checkout_method = _method(checkout_method)
        self._balances = balance_tracker or BillingGroupBalanceTracker(session, self._clock)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: Any, for_update: bool = False) -> Payment:
        return self._get_or_raise(Payment, payment_id, PaymentNotFoundError, for_update=for_update)

    def _existing_batch(self, payment: Payment) -> PaymentAllocationBatch | None:
        return self.session.execute(
            select(PaymentAllocationBatch)
            .where(PaymentAllocationBatch.payment_id == payment.id)
            .with_for_update()
        ).scalar_one_or_none()

    def _lock_groups(self, tab_id, billing_group_ids: Iterable[Any]) -> list[BillingGroup]:
        """Active groups of ``tab_id`` among the requested ids, in request order."""
        requested = [k for k in (_parse_uuid(i) for i in billing_group_ids) if k is not None]
        if not requested:
            return []
        # Lock in primary key order so concurrent callers cannot deadlock
        rows = self.session.execute(
            select(BillingGroup)
            .where(
                BillingGroup.id.in_(requested),
                BillingGroup.tab_id == tab_id,
                BillingGroup.status == GroupStatus.ACTIVE.value,
            )
            .order_by(BillingGroup.id)
            .with_for_update()
        ).scalars().all()
        by_id = {g.id: g for g in rows}
        return [by_id[k] for k in requested if k in by_id]

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        payment_id: Any,
        billing_group_ids: Iterable[Any],
        method: AllocationMethod | str = AllocationMethod.PROPORTIONAL,
        user_id: str | None = None,
    ) -> AllocationOutcome:
        """
        Allocate a settled payment across the given billing groups.

        Preconditions:
            - The payment exists and has status ``succeeded``.
            - At least one requested id is an active group of the
              payment's tab (other ids are ignored).
        Postconditions:
            - sum(outcome.allocations) == payment.amount.
            - Each group's balance dropped by its allocated amount.
            - Payment metadata carries the allocation list and method.
        Raises:
            See module docstring.
        """
        method = _method(method)
        requested = parse_billing_group_ids(billing_group_ids)

        with LogContext.bind(payment_id=str(payment_id)):
            payment = self.get_payment(payment_id, for_update=True)
            if not payment.is_settled:
                raise PaymentNotSettledError(str(payment.id), payment.status)
            if payment.amount <= 0:
                raise ValidationError(f"Payment amount must be positive: {payment.amount}", field="amount")
            if self._existing_batch(payment) is not None:
                raise PaymentAlreadyAllocatedError(str(payment.id))

            groups = self._lock_groups(payment.tab_id, requested)
            if not groups:
                logger.warning(
                    "allocation_no_billing_groups",
                    extra={"tab_id": str(payment.tab_id), "requested": requested},
                )
                raise NoBillingGroupsError(str(payment.tab_id), requested)

            amount = Money.of(round_money(payment.amount), payment.currency)
            targets = [
                AllocationTarget(str(g.id), Money.of(g.current_balance, payment.currency))
                for g in groups
            ]
            total_balance = round_money(sum(g.current_balance for g in groups))
            if amount.amount > total_balance:
                raise InsufficientBalanceError(str(payment.id), amount.amount, total_balance)

            result = self._engine.allocate(amount, targets, method)
            # Guaranteed by the engine once amount <= total balance
            assert result.is_fully_allocated, "allocation left part of the payment unallocated"

            return self._persist(payment, groups, result, method, user_id)

    def _persist(self, payment: Payment, groups, result, method: AllocationMethod,
                 user_id: str | None) -> AllocationOutcome:
        now = self._clock.now_utc()
        batch = PaymentAllocationBatch(
            payment_id=payment.id,
            tab_id=payment.tab_id,
            method=method.value,
            total_amount=result.total_allocated.amount,
            allocated_at=now,
        )
        self.session.add(batch)
        try:
            self.session.flush()
        except IntegrityError as exc:
            # Another transaction allocated the same payment first
            raise PaymentAlreadyAllocatedError(str(payment.id)) from exc

        by_id = {str(g.id): g for g in groups}
        allocations: list[GroupAllocation] = []
        for line_no, line in enumerate(result.funded_lines, start=1):
            group = by_id[line.target_id]
            self.session.add(PaymentAllocation(
                batch_id=batch.id,
                payment_id=payment.id,
                billing_group_id=group.id,
                line_no=line_no,
                amount=line.allocated.amount,
            ))
            self._balances.credit_payment(group, line.allocated.amount)
            allocations.append(GroupAllocation(line.target_id, line.allocated.amount))

        payment.payment_metadata = {
            **(payment.payment_metadata or {}),
            ALLOCATIONS_KEY: [a.to_metadata() for a in allocations],
            METHOD_KEY: method.value,
            ALLOCATED_AT_KEY: now.isoformat(),
        }
        self.session.flush()

        self._audit.record_payment_allocated(
            payment.id, payment.tab_id, method.value, allocations, user_id=user_id
        )
        logger.info(
            "payment_allocated",
            extra={
                "tab_id": str(payment.tab_id),
                "method": method.value,
                "amount": str(payment.amount),
                "group_count": len(allocations),
            },
        )
        return AllocationOutcome(
            payment_id=str(payment.id),
            tab_id=str(payment.tab_id),
            method=method.value,
            allocations=tuple(allocations),
            updated_groups=tuple(BillingGroupSnapshot.from_model(g) for g in groups),
            allocated_at=now,
        )

    def allocate_from_checkout(
        self,
        payment_id: Any,
        checkout_metadata: Mapping[str, Any] | None,
        user_id: str | None = None,
    ) -> AllocationOutcome | None:
        """
        Allocate using the billing group selection made at checkout.

        Returns None, without touching anything, when the metadata names
        no billing groups (tabs without billing groups enabled).
        """
        metadata = checkout_metadata or {}
        raw = next((metadata[k] for k in CHECKOUT_GROUP_KEYS if metadata.get(k)), None)
        ids = parse_billing_group_ids(raw)
        if not ids:
            logger.debug("checkout_without_billing_groups", extra={"payment_id": str(payment_id)})
            return None
        return self.allocate(payment_id, ids, self._checkout_method, user_id=user_id)

    # ------------------------------------------------------------------
    # Reversal
    # ------------------------------------------------------------------

    def reverse_payment_allocation(
        self,
        payment_id: Any,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> ReversalOutcome:
        """
        Give every allocated amount back to its billing group.

        Raises:
            AllocationNotFoundError: unknown payment, or no allocation
                metadata on it.
            AllocationAlreadyReversedError: reversed before.
        """
        with LogContext.bind(payment_id=str(payment_id)):
            try:
                payment = self._get_or_raise(Payment, payment_id, AllocationNotFoundError, for_update=True)
            except AllocationNotFoundError:
                logger.warning("reversal_payment_not_found")
                raise

            metadata = payment.payment_metadata or {}
            restored = allocations_from_metadata(metadata)
            if not restored:
                raise AllocationNotFoundError(str(payment.id))

            batch = self._existing_batch(payment)
            if metadata.get(REVERSED_AT_KEY) or (batch is not None and batch.is_reversed):
                raise AllocationAlreadyReversedError(str(payment.id))

            group_ids = [_parse_uuid(a.billing_group_id) for a in restored]
            rows = self.session.execute(
                select(BillingGroup)
                .where(BillingGroup.id.in_([g for g in group_ids if g is not None]))
                .order_by(BillingGroup.id)
                .with_for_update()
            ).scalars().all()
            by_id = {str(g.id): g for g in rows}

            now = self._clock.now_utc()
            touched: list[BillingGroup] = []
            for allocation in restored:
                group = by_id.get(allocation.billing_group_id)
                if group is None:
                    raise BillingGroupNotFoundError(allocation.billing_group_id)
                self._balances.restore_payment(group, allocation.amount)
                touched.append(group)

            if batch is not None:
                batch.reversed_at = now
                for line in batch.lines:
                    line.reversed_at = now

            payment.payment_metadata = {**metadata, REVERSED_AT_KEY: now.isoformat()}
            self.session.flush()

            self._audit.record_allocation_reversed(
                payment.id, payment.tab_id, restored, user_id=user_id, reason=reason
            )
            logger.info(
                "payment_allocation_reversed",
                extra={"tab_id": str(payment.tab_id), "group_count": len(restored)},
            )
            return ReversalOutcome(
                payment_id=str(payment.id),
                restored=restored,
                updated_groups=tuple(BillingGroupSnapshot.from_model(g) for g in touched),
                reversed_at=now,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_tab_payment_allocations(self, tab_id: Any) -> list[TabPaymentAllocation]:
        return PaymentSelector(self.session).tab_payment_allocations(tab_id)
