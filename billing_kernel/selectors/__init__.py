"""Read-only selectors returning DTOs."""

from billing_kernel.selectors.billing_group_selector import BillingGroupSelector, rule_spec_from_model
from billing_kernel.selectors.payment_selector import PaymentSelector

__all__ = ["BillingGroupSelector", "PaymentSelector", "rule_spec_from_model"]
