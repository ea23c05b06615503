"""
BillingGroupBalanceTracker -- the only writer of BillingGroup.current_balance.

Responsibility:
    Keeps each billing group's outstanding balance in step with line item
    assignment (balance goes up), payment allocation (down) and reversal
    (back up), and applies prepaid deposits.

Architecture position:
    Kernel > Services.  Called by LineItemAssignmentService,
    BillingGroupService and PaymentAllocationService inside their
    transaction; flushes only.

Invariants enforced:
    - current_balance >= 0.  A decrement that would go below zero is
      clamped at zero and logged as ``balance_floor_clamped`` (a warning,
      never an error).
    - Credit limit: for a ``credit`` group with a credit_limit, an
      assignment with ``balance + total_price > credit_limit`` is rejected
      before anything is mutated.
    - Closed groups accept no new line items.
    - Every stored amount goes through ``round_money``.

Failure modes:
    - CreditLimitExceededError, BillingGroupClosedError,
      DepositUnavailableError.
"""

from decimal import Decimal

from sqlalchemy import func, select

from billing_kernel.db.types import ZERO, floor_at_zero, round_money
from billing_kernel.domain.dtos import AssignmentStatus, GroupType
from billing_kernel.exceptions import (
    BillingGroupClosedError,
    CreditLimitExceededError,
    DepositUnavailableError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.billing_group import BillingGroup
from billing_kernel.models.payment import PaymentAllocation
from billing_kernel.models.tab import LineItem
from billing_kernel.services.base import BaseService

logger = get_logger("services.balance_tracker")


class BillingGroupBalanceTracker(BaseService[BillingGroup]):
    """
    Maintains billing group balances.

    Contract:
        Receives ORM instances already loaded (and, on PostgreSQL, locked)
        by the calling service and mutates them in place.

    Non-goals:
        - Does NOT choose the target group (rule engine / caller does).
        - Does NOT write audit records (the calling service does).
    """

    def _decrement(self, group: BillingGroup, amount: Decimal, reason: str) -> Decimal:
        new_balance, clamped = floor_at_zero(round_money(group.current_balance - amount))
        if clamped:
            logger.warning(
                "balance_floor_clamped",
                extra={
                    "billing_group_id": str(group.id),
                    "balance": str(group.current_balance),
                    "decrement": str(amount),
                    "reason": reason,
                },
            )
        group.current_balance = new_balance
        return new_balance

    def check_can_assign(self, line_item: LineItem, group: BillingGroup) -> None:
        """Raise if ``line_item`` may not be assigned to ``group``; mutates nothing."""
        if not group.is_active:
            raise BillingGroupClosedError(str(group.id))
        if line_item.billing_group_id == group.id:
            return
        if group.group_type == GroupType.CREDIT.value and group.credit_limit is not None:
            projected = round_money(group.current_balance + line_item.total_price)
            if projected > group.credit_limit:
                logger.warning(
                    "credit_limit_exceeded",
                    extra={
                        "billing_group_id": str(group.id),
                        "line_item_id": str(line_item.id),
                        "balance": str(group.current_balance),
                        "amount": str(line_item.total_price),
                        "credit_limit": str(group.credit_limit),
                    },
                )
                raise CreditLimitExceededError(
                    billing_group_id=str(group.id),
                    current_balance=group.current_balance,
                    amount=line_item.total_price,
                    credit_limit=group.credit_limit,
                )

    def assign(self, line_item: LineItem, group: BillingGroup) -> BillingGroup:
        """
        Assign ``line_item`` to ``group`` and add its total to the balance.

        An item already assigned elsewhere is first unassigned from its old
        group.  Re-assigning to the same group is a no-op.

        Raises:
            BillingGroupClosedError: ``group`` is closed.
            CreditLimitExceededError: the credit limit would be exceeded.
        """
        self.check_can_assign(line_item, group)
        if line_item.billing_group_id == group.id:
            return group

        if line_item.billing_group_id is not None:
            self.unassign(line_item)

        group.current_balance = round_money(group.current_balance + line_item.total_price)
        line_item.billing_group_id = group.id
        line_item.assignment_status = AssignmentStatus.ASSIGNED.value
        line_item.pending_billing_group_id = None
        line_item.pending_rule_id = None
        self.session.flush()

        logger.info(
            "line_item_assigned",
            extra={
                "line_item_id": str(line_item.id),
                "billing_group_id": str(group.id),
                "amount": str(line_item.total_price),
                "new_balance": str(group.current_balance),
            },
        )
        return group

    def unassign(self, line_item: LineItem) -> BillingGroup | None:
        """Remove ``line_item`` from its group; returns the old group, if any."""
        if line_item.billing_group_id is None:
            return None

        group = self.session.get(BillingGroup, line_item.billing_group_id, with_for_update=True)
        line_item.billing_group_id = None
        line_item.assignment_status = AssignmentStatus.UNASSIGNED.value
        if group is not None:
            self._decrement(group, line_item.total_price, reason="unassign")
        self.session.flush()

        logger.info(
            "line_item_unassigned",
            extra={
                "line_item_id": str(line_item.id),
                "billing_group_id": str(group.id) if group is not None else None,
                "amount": str(line_item.total_price),
            },
        )
        return group

    def credit_payment(self, group: BillingGroup, amount: Decimal) -> Decimal:
        """Reduce the balance by an allocated payment amount."""
        new_balance = self._decrement(group, round_money(amount), reason="payment")
        self.session.flush()
        return new_balance

    def restore_payment(self, group: BillingGroup, amount: Decimal) -> Decimal:
        """Add a reversed payment amount back to the balance."""
        group.current_balance = round_money(group.current_balance + round_money(amount))
        self.session.flush()
        return group.current_balance

    def apply_deposit(self, group: BillingGroup, amount: Decimal | None = None) -> Decimal:
        """
        Apply up to ``amount`` of the group's unapplied deposit.

        Applies ``min(amount, deposit_amount - deposit_applied)``; with no
        ``amount`` the whole remainder is applied.  Returns the amount
        actually applied.

        Raises:
            DepositUnavailableError: nothing is left to apply, or ``amount``
                is not positive.
        """
        available = round_money(
            (group.deposit_amount or ZERO) - (group.deposit_applied or ZERO)
        )
        to_apply = available if amount is None else min(round_money(amount), available)
        if to_apply <= 0:
            raise DepositUnavailableError(str(group.id))

        group.deposit_applied = round_money((group.deposit_applied or ZERO) + to_apply)
        self.session.flush()

        logger.info(
            "deposit_applied",
            extra={
                "billing_group_id": str(group.id),
                "amount_applied": str(to_apply),
                "remaining_deposit": str(available - to_apply),
            },
        )
        return to_apply

    def recompute_balance(self, group: BillingGroup) -> Decimal:
        """
        Rebuild current_balance from assigned item totals minus the group's
        non-reversed payment allocations, floored at zero.
        """
        item_total = self.session.execute(
            select(func.coalesce(func.sum(LineItem.total_price), 0))
            .where(LineItem.billing_group_id == group.id)
        ).scalar_one()
        allocated = self.session.execute(
            select(func.coalesce(func.sum(PaymentAllocation.amount), 0))
            .where(
                PaymentAllocation.billing_group_id == group.id,
                PaymentAllocation.reversed_at.is_(None),
            )
        ).scalar_one()

        new_balance, _ = floor_at_zero(
            round_money(Decimal(str(item_total)) - Decimal(str(allocated)))
        )
        if new_balance != group.current_balance:
            logger.info(
                "balance_recomputed",
                extra={
                    "billing_group_id": str(group.id),
                    "old_balance": str(group.current_balance),
                    "new_balance": str(new_balance),
                },
            )
        group.current_balance = new_balance
        self.session.flush()
        return new_balance
