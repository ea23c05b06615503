"""
Module: billing_engines.allocation
Responsibility:
    Split one payment across the billing groups of a tab using one of three
    methods (proportional, fifo, equal) with deterministic rounding.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel/domain and billing_kernel/logging_config.
    Persistence of the result is PaymentAllocationService's job.

Invariants enforced:
    - Conservation: total_allocated + unallocated == source_amount.
    - Caps: no group ever receives more than its outstanding balance.
    - Full allocation: when amount <= sum(balances) every method allocates
      the entire amount (unallocated == 0).
    - Rounding: amounts are quantized to the currency's minor unit with
      ROUND_HALF_UP; the rounding remainder lands on one designated target
      (the last) so penny totals reconcile exactly.
    - Determinism: identical inputs produce identical lines, in input order.

Failure modes:
    - ValueError on a negative amount or balance.
    - ValueError on currency mismatch between the payment and a balance.
    - ValueError on duplicate target ids or an unknown method.

Usage:
    engine = BillingGroupAllocationEngine()
    result = engine.allocate(
        amount=Money.of("100.00", "USD"),
        targets=[
            AllocationTarget("bg_1", Money.of("60.00", "USD")),
            AllocationTarget("bg_2", Money.of("40.00", "USD")),
        ],
        method=AllocationMethod.PROPORTIONAL,
    )
    # result.lines -> bg_1: 60.00, bg_2: 40.00
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from enum import Enum

from billing_engines.tracer import traced_engine
from billing_kernel.domain.values import Currency, Money
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")


class AllocationMethod(str, Enum):
    """How a payment is split across billing groups."""

    PROPORTIONAL = "proportional"  # By share of total outstanding balance
    FIFO = "fifo"  # Fill groups in the order given
    EQUAL = "equal"  # Same share each, capped, shortfall redistributed


@dataclass(frozen=True)
class AllocationTarget:
    """A billing group that can receive part of a payment."""

    target_id: str
    balance: Money

    def __post_init__(self) -> None:
        if self.balance.is_negative:
            raise ValueError(f"Target {self.target_id} has a negative balance")


@dataclass(frozen=True)
class AllocationLine:
    """
    Result of allocation to a single billing group.

    Guarantees:
        - allocated + remaining == the target's balance.
    """

    target_id: str
    allocated: Money
    remaining: Money

    @property
    def is_fully_allocated(self) -> bool:
        return self.remaining.is_zero


@dataclass(frozen=True)
class AllocationResult:
    """
    Complete allocation result.

    Guarantees:
        - total_allocated + unallocated == source_amount.
        - lines are in the same order as the targets passed in.
    """

    source_amount: Money
    method: AllocationMethod
    lines: tuple[AllocationLine, ...]
    total_allocated: Money
    unallocated: Money

    @property
    def is_fully_allocated(self) -> bool:
        return self.unallocated.is_zero

    @property
    def funded_lines(self) -> tuple[AllocationLine, ...]:
        """Lines with a non-zero allocation (what gets persisted)."""
        return tuple(line for line in self.lines if not line.allocated.is_zero)


class BillingGroupAllocationEngine:
    """
    Allocate a payment across billing groups.

    Contract:
        Pure and deterministic. All intermediate math is Decimal; final
        amounts are quantized to the currency's minor unit.

    Non-goals:
        - Does not decide which groups take part or which method to use.
        - Does not reject over-payment; the excess is reported as
          ``unallocated`` and the caller decides.
    """

    @traced_engine(
        "billing_group_allocation", "1.0", fingerprint_fields=("amount", "targets", "method")
    )
    def allocate(
        self,
        amount: Money,
        targets: Sequence[AllocationTarget],
        method: AllocationMethod,
    ) -> AllocationResult:
        """
        Allocate ``amount`` to ``targets`` using ``method``.

        Preconditions:
            - amount is non-negative; every balance is in amount's currency.
        Postconditions:
            - See AllocationResult guarantees.
        Raises:
            ValueError: On negative amount, currency mismatch, duplicate
                targets, or unknown method.
        """
        method = AllocationMethod(method)
        self._validate(amount, targets)

        logger.info("allocation_started", extra={
            "amount": str(amount.amount),
            "currency": amount.currency.code,
            "method": method.value,
            "target_count": len(targets),
        })

        if not targets:
            logger.warning("allocation_no_targets", extra={"method": method.value})
            return self._result(amount, method, targets, [])

        q = amount.currency.quantum
        caps = [t.balance.amount.quantize(q, rounding=ROUND_HALF_UP) for t in targets]
        allocatable = min(amount.amount.quantize(q, rounding=ROUND_HALF_UP), sum(caps))

        match method:
            case AllocationMethod.PROPORTIONAL:
                amounts = self._allocate_proportional(allocatable, caps, q)
            case AllocationMethod.FIFO:
                amounts = self._allocate_fifo(allocatable, caps)
            case AllocationMethod.EQUAL:
                amounts = self._allocate_equal(allocatable, caps, q)
            case _:
                raise ValueError(f"Unknown allocation method: {method}")

        return self._result(amount, method, targets, amounts)

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def _allocate_proportional(
        self, allocatable: Decimal, caps: list[Decimal], q: Decimal
    ) -> list[Decimal]:
        """Share of allocatable by balance weight; remainder to the last target."""
        total = sum(caps)
        if total == 0:
            return [Decimal("0")] * len(caps)

        amounts: list[Decimal] = []
        for cap in caps[:-1]:
            amounts.append((allocatable * cap / total).quantize(q, rounding=ROUND_HALF_UP))
        amounts.append(allocatable - sum(amounts))

        last = len(caps) - 1
        if amounts[last] > caps[last]:
            # Rounding pushed the last group over its balance; spill back
            excess = amounts[last] - caps[last]
            amounts[last] = caps[last]
            self._spill_backwards(amounts, caps, range(last), excess)
        elif amounts[last] < 0:
            deficit = -amounts[last]
            amounts[last] = Decimal("0")
            for i in reversed(range(last)):
                take = min(deficit, amounts[i])
                amounts[i] -= take
                deficit -= take
                if deficit == 0:
                    break
        return amounts

    def _allocate_fifo(self, allocatable: Decimal, caps: list[Decimal]) -> list[Decimal]:
        remaining = allocatable
        amounts: list[Decimal] = []
        for cap in caps:
            take = min(remaining, cap)
            amounts.append(take)
            remaining -= take
        return amounts

    def _allocate_equal(
        self, allocatable: Decimal, caps: list[Decimal], q: Decimal
    ) -> list[Decimal]:
        """
        Equal shares capped at each balance.

        A capped group's unused share is redistributed equally among the
        groups that still have room, round after round. Sub-cent leftovers
        go to the last open group, so the full amount is always placed
        when it fits within the total balance.
        """
        amounts = [Decimal("0")] * len(caps)
        remaining = allocatable
        open_idx = [i for i, cap in enumerate(caps) if cap > 0]

        while remaining > 0 and open_idx:
            share = (remaining / len(open_idx)).quantize(q, rounding=ROUND_DOWN)
            capped: list[int] = []
            for i in open_idx:
                give = min(share, caps[i] - amounts[i])
                amounts[i] += give
                remaining -= give
                if amounts[i] == caps[i]:
                    capped.append(i)
            open_idx = [i for i in open_idx if i not in capped]
            if not capped:
                # Every open group took a full share; less than one minor
                # unit per group is left over.
                self._spill_backwards(amounts, caps, open_idx, remaining)
                remaining = Decimal("0")

        return amounts

    @staticmethod
    def _spill_backwards(
        amounts: list[Decimal],
        caps: list[Decimal],
        indexes: Sequence[int] | range,
        excess: Decimal,
    ) -> None:
        for i in reversed(list(indexes)):
            if excess == 0:
                return
            room = caps[i] - amounts[i]
            give = min(room, excess)
            amounts[i] += give
            excess -= give

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(amount: Money, targets: Sequence[AllocationTarget]) -> None:
        if amount.is_negative:
            raise ValueError(f"Cannot allocate a negative amount: {amount}")
        seen: set[str] = set()
        for target in targets:
            if target.balance.currency != amount.currency:
                raise ValueError(
                    f"Currency mismatch: {target.balance.currency} vs {amount.currency}"
                )
            if target.target_id in seen:
                raise ValueError(f"Duplicate allocation target: {target.target_id}")
            seen.add(target.target_id)

    @staticmethod
    def _result(
        amount: Money,
        method: AllocationMethod,
        targets: Sequence[AllocationTarget],
        amounts: list[Decimal],
    ) -> AllocationResult:
        currency: Currency = amount.currency
        lines = tuple(
            AllocationLine(
                target_id=target.target_id,
                allocated=Money.of(allocated, currency),
                remaining=Money.of(target.balance.amount - allocated, currency),
            )
            for target, allocated in zip(targets, amounts)
        )
        total = Money.of(sum(amounts, Decimal("0")), currency)
        unallocated = amount - total

        assert total.amount + unallocated.amount == amount.amount, (
            f"Allocation conservation violated: "
            f"{total.amount} + {unallocated.amount} != {amount.amount}"
        )

        logger.info("allocation_completed", extra={
            "method": method.value,
            "source_amount": str(amount.amount),
            "total_allocated": str(total.amount),
            "unallocated": str(unallocated.amount),
            "targets_funded": sum(1 for line in lines if not line.allocated.is_zero),
        })

        return AllocationResult(
            source_amount=amount,
            method=method,
            lines=lines,
            total_allocated=total,
            unallocated=unallocated,
        )
