"""
Tests for the billing group allocation engine.

Covers:
- Proportional allocation and its rounding remainder
- FIFO allocation
- Equal allocation with capping and redistribution
- Conservation and cap properties (hypothesis)
- Edge cases and error handling
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from billing_engines.allocation import (
    AllocationMethod,
    AllocationResult,
    AllocationTarget,
    BillingGroupAllocationEngine,
)
from billing_kernel.domain.values import Money


def usd(amount) -> Money:
    return Money.of(str(amount), "USD")


def targets(*balances) -> list[AllocationTarget]:
    return [AllocationTarget(f"bg_{i + 1}", usd(b)) for i, b in enumerate(balances)]


def allocated(result: AllocationResult) -> list[Decimal]:
    return [line.allocated.amount for line in result.lines]


class TestProportionalAllocation:
    def setup_method(self):
        self.engine = BillingGroupAllocationEngine()

    def test_simple_proportional(self):
        result = self.engine.allocate(usd("100.00"), targets("60.00", "40.00"), AllocationMethod.PROPORTIONAL)
        assert allocated(result) == [Decimal("60.00"), Decimal("40.00")]
        assert result.is_fully_allocated
        assert result.total_allocated == usd("100.00")

    def test_partial_payment_scales_down(self):
        result = self.engine.allocate(usd("50.00"), targets("60.00", "40.00"), AllocationMethod.PROPORTIONAL)
        assert allocated(result) == [Decimal("30.00"), Decimal("20.00")]

    def test_remainder_lands_on_last_target(self):
        result = self.engine.allocate(
            usd("100.00"), targets("10.00", "10.00", "10.00"), AllocationMethod.PROPORTIONAL
        )
        # 100 exceeds the 30 outstanding, so every group is paid off
        assert allocated(result) == [Decimal("10.00")] * 3
        assert result.unallocated == usd("70.00")

        result = self.engine.allocate(
            usd("10.00"), targets("10.00", "10.00", "10.00"), AllocationMethod.PROPORTIONAL
        )
        assert allocated(result) == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]

    def test_zero_balance_target_gets_nothing(self):
        result = self.engine.allocate(
            usd("20.00"), targets("0.00", "40.00"), AllocationMethod.PROPORTIONAL
        )
        assert allocated(result) == [Decimal("0.00"), Decimal("20.00")]
        assert [line.target_id for line in result.funded_lines] == ["bg_2"]

    def test_all_zero_balances(self):
        result = self.engine.allocate(usd("5.00"), targets("0", "0"), AllocationMethod.PROPORTIONAL)
        assert result.total_allocated.is_zero
        assert result.unallocated == usd("5.00")

    def test_rounding_never_pushes_last_group_over_balance(self):
        result = self.engine.allocate(
            usd("0.03"), targets("0.01", "0.01", "0.01"), AllocationMethod.PROPORTIONAL
        )
        assert allocated(result) == [Decimal("0.01")] * 3


class TestFifoAllocation:
    def setup_method(self):
        self.engine = BillingGroupAllocationEngine()

    def test_fills_in_order(self):
        result = self.engine.allocate(usd("70.00"), targets("50.00", "50.00", "50.00"), AllocationMethod.FIFO)
        assert allocated(result) == [Decimal("50.00"), Decimal("20.00"), Decimal("0.00")]
        assert len(result.funded_lines) == 2

    def test_exact_fit(self):
        result = self.engine.allocate(usd("100.00"), targets("50.00", "50.00"), AllocationMethod.FIFO)
        assert allocated(result) == [Decimal("50.00"), Decimal("50.00")]
        assert all(line.is_fully_allocated for line in result.lines)


class TestEqualAllocation:
    def setup_method(self):
        self.engine = BillingGroupAllocationEngine()

    def test_even_split(self):
        result = self.engine.allocate(usd("90.00"), targets("50.00", "50.00", "50.00"), AllocationMethod.EQUAL)
        assert allocated(result) == [Decimal("30.00")] * 3

    def test_capped_share_is_redistributed(self):
        result = self.engine.allocate(usd("90.00"), targets("10.00", "50.00", "50.00"), AllocationMethod.EQUAL)
        assert allocated(result) == [Decimal("10.00"), Decimal("40.00"), Decimal("40.00")]
        assert result.is_fully_allocated

    def test_sub_cent_remainder_goes_to_last_open_group(self):
        result = self.engine.allocate(usd("10.00"), targets("50.00", "50.00", "50.00"), AllocationMethod.EQUAL)
        assert allocated(result) == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]

    def test_zero_balance_group_skipped(self):
        result = self.engine.allocate(usd("10.00"), targets("0.00", "50.00"), AllocationMethod.EQUAL)
        assert allocated(result) == [Decimal("0.00"), Decimal("10.00")]


class TestValidation:
    def setup_method(self):
        self.engine = BillingGroupAllocationEngine()

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            self.engine.allocate(usd("-1.00"), targets("10.00"), AllocationMethod.FIFO)

    def test_negative_balance_rejected(self):
        with pytest.raises(ValueError, match="negative balance"):
            AllocationTarget("bg", usd("-0.01"))

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValueError, match="Currency mismatch"):
            self.engine.allocate(
                usd("10.00"), [AllocationTarget("bg", Money.of("10.00", "EUR"))], AllocationMethod.FIFO
            )

    def test_duplicate_targets_rejected(self):
        dupes = [AllocationTarget("bg", usd("1.00")), AllocationTarget("bg", usd("2.00"))]
        with pytest.raises(ValueError, match="Duplicate"):
            self.engine.allocate(usd("1.00"), dupes, AllocationMethod.FIFO)

    def test_unknown_method_rejected(self):
        with pytest.raises(ValueError):
            self.engine.allocate(usd("1.00"), targets("1.00"), "lifo")

    def test_method_accepts_string_value(self):
        result = self.engine.allocate(usd("1.00"), targets("1.00"), "equal")
        assert result.method is AllocationMethod.EQUAL

    def test_no_targets(self):
        result = self.engine.allocate(usd("5.00"), [], AllocationMethod.PROPORTIONAL)
        assert result.lines == ()
        assert result.unallocated == usd("5.00")


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

cents = st.integers(min_value=0, max_value=10_000_00)
balance_lists = st.lists(cents, min_size=1, max_size=8)
methods = st.sampled_from(list(AllocationMethod))


def _money_from_cents(value: int) -> Money:
    return Money.of(Decimal(value).scaleb(-2), "USD")


class TestAllocationProperties:
    @settings(max_examples=200, deadline=None)
    @given(balances=balance_lists, payment=cents, method=methods)
    def test_conservation_and_caps(self, balances, payment, method):
        engine = BillingGroupAllocationEngine()
        result = engine.allocate(
            _money_from_cents(payment),
            [AllocationTarget(f"bg_{i}", _money_from_cents(b)) for i, b in enumerate(balances)],
            method,
        )

        assert result.total_allocated + result.unallocated == result.source_amount
        for line, balance in zip(result.lines, balances):
            assert Decimal("0") <= line.allocated.amount <= _money_from_cents(balance).amount
            assert line.allocated.amount == line.allocated.amount.quantize(Decimal("0.01"))

    @settings(max_examples=200, deadline=None)
    @given(balances=balance_lists, method=methods, data=st.data())
    def test_full_allocation_when_payment_fits(self, balances, method, data):
        payment = data.draw(st.integers(min_value=0, max_value=sum(balances)))
        engine = BillingGroupAllocationEngine()
        result = engine.allocate(
            _money_from_cents(payment),
            [AllocationTarget(f"bg_{i}", _money_from_cents(b)) for i, b in enumerate(balances)],
            method,
        )
        assert result.is_fully_allocated
        assert result.total_allocated == _money_from_cents(payment)

    @settings(max_examples=50, deadline=None)
    @given(balances=balance_lists, payment=cents, method=methods)
    def test_deterministic(self, balances, payment, method):
        engine = BillingGroupAllocationEngine()
        args = (
            _money_from_cents(payment),
            [AllocationTarget(f"bg_{i}", _money_from_cents(b)) for i, b in enumerate(balances)],
            method,
        )
        assert engine.allocate(*args) == engine.allocate(*args)
