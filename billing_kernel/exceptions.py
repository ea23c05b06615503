"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the billing kernel (the web layer, webhook handlers, batch jobs)
map failures onto HTTP status codes and user-facing messages. Parsing
message strings for that is fragile, so every failure is:
  1. A TYPED exception class (catch by type, not message)
  2. Carrying a CODE attribute (machine-readable, API-safe)
  3. Carrying structured DATA (ids and amounts as attributes)

Example:
    try:
        allocation_service.allocate(payment_id, group_ids, method)
    except NoBillingGroupsError as e:
        api_response(status=409, code=e.code, tab_id=e.tab_id)
    except NotFoundError as e:
        api_response(status=404, code=e.code, message=str(e))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError                     (400-class: malformed input)
    |   +-- InvalidRuleConditionsError
    |
    +-- NotFoundError                       (404-class: missing entity)
    |   +-- PaymentNotFoundError
    |   +-- PaymentNotSettledError
    |   +-- TabNotFoundError
    |   +-- BillingGroupNotFoundError
    |   +-- BillingGroupRuleNotFoundError
    |   +-- LineItemNotFoundError
    |
    +-- BusinessRuleError                   (409-class: domain invariant)
    |   +-- NoBillingGroupsError
    |   +-- CreditLimitExceededError
    |   +-- BillingGroupClosedError
    |   +-- InsufficientBalanceError
    |   +-- PaymentAlreadyAllocatedError
    |   +-- AllocationNotFoundError
    |   +-- AllocationAlreadyReversedError
    |   +-- DepositUnavailableError
    |   +-- RuleRejectedError
    |   +-- NoPendingAssignmentError
    |
    +-- ImmutabilityViolationError          (append-only records touched)

===============================================================================
PROPAGATION
===============================================================================

The rule condition evaluator never raises: malformed conditions make the
rule non-matching. Services raise these errors; the transaction scope in
``billing_kernel.db.engine`` rolls back and re-raises. ``str(error)`` is the
single user-visible message. The only failure recovered silently is the
balance floor clamp in the balance tracker, which is logged as a warning.
"""

from decimal import Decimal


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation errors


class ValidationError(BillingKernelError):
    """Malformed input rejected before any state change."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidRuleConditionsError(ValidationError):
    """Rule conditions could not be parsed into a RuleConditions value."""

    code: str = "INVALID_RULE_CONDITIONS"

    def __init__(self, field: str, reason: str):
        self.reason = reason
        super().__init__(f"Invalid rule conditions ({field}): {reason}", field=field)


# Not-found errors


class NotFoundError(BillingKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    """Payment with given ID was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class PaymentNotSettledError(NotFoundError):
    """Payment exists but has not succeeded, so there is nothing to allocate."""

    code: str = "PAYMENT_NOT_SETTLED"

    def __init__(self, payment_id: str, status: str):
        self.payment_id = payment_id
        self.status = status
        super().__init__(
            f"Payment not found in succeeded state: {payment_id} (status: {status})"
        )


class TabNotFoundError(NotFoundError):
    """Tab with given ID was not found."""

    code: str = "TAB_NOT_FOUND"

    def __init__(self, tab_id: str):
        self.tab_id = tab_id
        super().__init__(f"Tab not found: {tab_id}")


class BillingGroupNotFoundError(NotFoundError):
    """Billing group with given ID was not found."""

    code: str = "BILLING_GROUP_NOT_FOUND"

    def __init__(self, billing_group_id: str):
        self.billing_group_id = billing_group_id
        super().__init__(f"Billing group not found: {billing_group_id}")


class BillingGroupRuleNotFoundError(NotFoundError):
    """Billing group rule with given ID was not found."""

    code: str = "BILLING_GROUP_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Billing group rule not found: {rule_id}")


class LineItemNotFoundError(NotFoundError):
    """Line item with given ID was not found."""

    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Line item not found: {line_item_id}")


# Business rule errors


class BusinessRuleError(BillingKernelError):
    """Valid input that would violate a domain invariant."""

    code: str = "BUSINESS_RULE_VIOLATION"


class NoBillingGroupsError(BusinessRuleError):
    """None of the requested billing groups belongs to the payment's tab."""

    code: str = "NO_BILLING_GROUPS"

    def __init__(self, tab_id: str, requested_ids: list[str]):
        self.tab_id = tab_id
        self.requested_ids = requested_ids
        super().__init__("No billing groups found")


class CreditLimitExceededError(BusinessRuleError):
    """Assignment would push a credit group's balance over its limit."""

    code: str = "CREDIT_LIMIT_EXCEEDED"

    def __init__(
        self,
        billing_group_id: str,
        current_balance: Decimal,
        amount: Decimal,
        credit_limit: Decimal,
    ):
        self.billing_group_id = billing_group_id
        self.current_balance = current_balance
        self.amount = amount
        self.credit_limit = credit_limit
        super().__init__(
            f"Credit limit exceeded for billing group {billing_group_id}: "
            f"balance {current_balance} + {amount} > limit {credit_limit}"
        )


class BillingGroupClosedError(BusinessRuleError):
    """Operation targets a billing group that has been closed."""

    code: str = "BILLING_GROUP_CLOSED"

    def __init__(self, billing_group_id: str):
        self.billing_group_id = billing_group_id
        super().__init__(f"Billing group {billing_group_id} is closed")


class InsufficientBalanceError(BusinessRuleError):
    """Payment exceeds the outstanding balance of the selected groups."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(self, payment_id: str, amount: Decimal, total_balance: Decimal):
        self.payment_id = payment_id
        self.amount = amount
        self.total_balance = total_balance
        super().__init__(
            f"Payment {payment_id} amount {amount} exceeds outstanding "
            f"billing group balance {total_balance}"
        )


class PaymentAlreadyAllocatedError(BusinessRuleError):
    """An allocation batch already exists for this payment."""

    code: str = "PAYMENT_ALREADY_ALLOCATED"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} has already been allocated")


class AllocationNotFoundError(BusinessRuleError):
    """Reversal requested but the payment carries no allocation metadata."""

    code: str = "ALLOCATION_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__("Payment or allocations not found")


class AllocationAlreadyReversedError(BusinessRuleError):
    """The payment's allocation has already been reversed."""

    code: str = "ALLOCATION_ALREADY_REVERSED"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Allocation for payment {payment_id} was already reversed")


class DepositUnavailableError(BusinessRuleError):
    """No unapplied deposit remains on the billing group."""

    code: str = "DEPOSIT_UNAVAILABLE"

    def __init__(self, billing_group_id: str):
        self.billing_group_id = billing_group_id
        super().__init__("No deposit available to apply")


class RuleRejectedError(BusinessRuleError):
    """A matching rule with the reject action blocked the assignment."""

    code: str = "RULE_REJECTED"

    def __init__(self, line_item_id: str, rule_id: str, rule_name: str):
        self.line_item_id = line_item_id
        self.rule_id = rule_id
        self.rule_name = rule_name
        super().__init__(
            f"Line item {line_item_id} rejected by rule '{rule_name}'"
        )


class NoPendingAssignmentError(BusinessRuleError):
    """Approval or decline requested for an item that is not pending."""

    code: str = "NO_PENDING_ASSIGNMENT"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Line item {line_item_id} has no pending assignment")


# Immutability errors


class ImmutabilityViolationError(BillingKernelError):
    """
    Attempted to modify or delete an append-only record.

    Audit events are immutable from creation; payment allocation rows only
    accept their reversal stamp.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
