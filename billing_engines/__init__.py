"""
Module: billing_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines: the rule
    condition evaluator, the billing group rule engine, and the payment
    allocation engine.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel.domain, billing_kernel.exceptions and
    billing_kernel.logging_config.  MUST NOT import services or selectors.

Invariants enforced:
    - Purity: engines never read the clock.  Evaluation time is passed in.
    - Decimal-only arithmetic for money.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every rule engine and allocation engine call emits a
    BILLING_ENGINE_TRACE log record (see ``billing_engines.tracer``).
"""

from billing_engines.allocation import (
    AllocationLine,
    AllocationMethod,
    AllocationResult,
    AllocationTarget,
    BillingGroupAllocationEngine,
)
from billing_engines.conditions import matches, weekday_sunday_zero
from billing_engines.rule_engine import RuleMatch, rule_evaluation_order, select_action

__all__ = [
    "AllocationLine",
    "AllocationMethod",
    "AllocationResult",
    "AllocationTarget",
    "BillingGroupAllocationEngine",
    "matches",
    "weekday_sunday_zero",
    "RuleMatch",
    "rule_evaluation_order",
    "select_action",
]
