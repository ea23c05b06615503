"""
Billing Kernel

Tab billing core for merchants running customer tabs:
- Billing groups (sub-ledgers per payer) with balance tracking
- Rule-driven line item assignment
- Payment allocation across billing groups with reversal
- Append-only audit trail
"""

__version__ = "0.1.0"
