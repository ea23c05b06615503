"""
Values -- Immutable money value objects.

Responsibility:
    Currency and Money replace raw floats and bare Decimals wherever an
    amount crosses a domain boundary (payments, allocations, balances).

Architecture position:
    Kernel > Domain -- pure core, zero I/O. Imported by the engines and
    the services; depends only on billing_kernel.domain.currency.

Invariants enforced:
    - Amounts are always Decimal, never float.
    - Currency codes are validated against CurrencyRegistry at construction.
    - Arithmetic and comparison never mix currencies.
    - Rounding is ROUND_HALF_UP to the currency's minor unit.

Failure modes:
    - ValueError on invalid amounts, unknown currencies, or mixed-currency
      arithmetic.
    - TypeError when currency is neither a Currency nor a str.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from billing_kernel.domain.currency import CurrencyRegistry


@dataclass(frozen=True, slots=True)
class Currency:
    """
    ISO 4217 currency code value object.

    Guarantees:
        - code is uppercase, stripped, and known to CurrencyRegistry.
    """

    code: str

    def __post_init__(self) -> None:
        normalized = self.code.upper().strip() if self.code else ""
        if not CurrencyRegistry.is_valid(normalized):
            raise ValueError(f"Invalid ISO 4217 currency code: {self.code}")
        object.__setattr__(self, "code", normalized)

    @property
    def decimal_places(self) -> int:
        return CurrencyRegistry.get_decimal_places(self.code)

    @property
    def quantum(self) -> Decimal:
        """One minor unit (0.01 for USD, 1 for JPY)."""
        return Decimal(1).scaleb(-self.decimal_places)

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"Currency({self.code!r})"


@dataclass(frozen=True, slots=True)
class Money:
    """
    Monetary amount value object.

    Contract:
        Pairs a Decimal amount with its Currency. Payments, allocation lines
        and balances handed to the allocation engine are Money.

    Guarantees:
        - amount is always a Decimal.
        - Same-currency constraint on every binary operation.

    Non-goals:
        - Does NOT auto-round; callers call ``round()`` explicitly.
    """

    amount: Decimal
    currency: Currency

    def __post_init__(self) -> None:
        if isinstance(self.amount, float):
            raise ValueError(f"Money amount must not be float: {self.amount!r}")
        if not isinstance(self.amount, Decimal):
            try:
                object.__setattr__(self, "amount", Decimal(str(self.amount)))
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"Invalid amount: {self.amount}") from e
        if not self.amount.is_finite():
            raise ValueError(f"Invalid amount: {self.amount}")

        if isinstance(self.currency, str):
            object.__setattr__(self, "currency", Currency(self.currency))
        elif not isinstance(self.currency, Currency):
            raise TypeError(f"currency must be Currency or str, got {type(self.currency)}")

    @classmethod
    def of(cls, amount: Decimal | str | int, currency: str | Currency) -> Money:
        """
        Factory method for creating Money.

        Raises:
            ValueError: If amount cannot be converted or currency is invalid.
        """
        return cls(amount=Decimal(str(amount)) if isinstance(amount, (str, int)) else amount,
                   currency=Currency(currency) if isinstance(currency, str) else currency)

    @classmethod
    def zero(cls, currency: str | Currency) -> Money:
        return cls.of(0, currency)

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    @property
    def is_positive(self) -> bool:
        return self.amount > 0

    @property
    def is_negative(self) -> bool:
        return self.amount < 0

    def round(self, rounding: str = ROUND_HALF_UP) -> Money:
        """Round to the currency's minor unit. Returns a new Money."""
        return Money(
            amount=self.amount.quantize(self.currency.quantum, rounding=rounding),
            currency=self.currency,
        )

    def _require_same_currency(self, other: Money, op: str) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot {op} Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._require_same_currency(other, "add")
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._require_same_currency(other, "subtract")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __neg__(self) -> Money:
        return Money(amount=-self.amount, currency=self.currency)

    def __mul__(self, factor: Decimal | int | str) -> Money:
        if isinstance(factor, (int, str)) and not isinstance(factor, bool):
            factor = Decimal(str(factor))
        if not isinstance(factor, Decimal):
            return NotImplemented
        return Money(amount=self.amount * factor, currency=self.currency)

    def __rmul__(self, factor: Decimal | int | str) -> Money:
        return self.__mul__(factor)

    def __truediv__(self, divisor: Decimal | int | str) -> Money:
        if isinstance(divisor, (int, str)) and not isinstance(divisor, bool):
            divisor = Decimal(str(divisor))
        if not isinstance(divisor, Decimal):
            return NotImplemented
        return Money(amount=self.amount / divisor, currency=self.currency)

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._require_same_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._require_same_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._require_same_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._require_same_currency(other, "compare")
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.code}"

    def __repr__(self) -> str:
        return f"Money({self.amount!r}, {self.currency!r})"
