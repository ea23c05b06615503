"""Currency -- ISO 4217 registry with per-currency minor units."""

from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    """Information about a single ISO 4217 currency."""

    code: str
    decimal_places: int
    name: str

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, used with Decimal.quantize()."""
        return Decimal(1).scaleb(-self.decimal_places)


class CurrencyRegistry:
    """Registry of the currencies a merchant can bill in."""

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        "USD": CurrencyInfo("USD", 2, "US Dollar"),
        "EUR": CurrencyInfo("EUR", 2, "Euro"),
        "GBP": CurrencyInfo("GBP", 2, "Pound Sterling"),
        "CAD": CurrencyInfo("CAD", 2, "Canadian Dollar"),
        "AUD": CurrencyInfo("AUD", 2, "Australian Dollar"),
        "NZD": CurrencyInfo("NZD", 2, "New Zealand Dollar"),
        "CHF": CurrencyInfo("CHF", 2, "Swiss Franc"),
        "MXN": CurrencyInfo("MXN", 2, "Mexican Peso"),
        "SGD": CurrencyInfo("SGD", 2, "Singapore Dollar"),
        "HKD": CurrencyInfo("HKD", 2, "Hong Kong Dollar"),
        "SEK": CurrencyInfo("SEK", 2, "Swedish Krona"),
        "NOK": CurrencyInfo("NOK", 2, "Norwegian Krone"),
        "DKK": CurrencyInfo("DKK", 2, "Danish Krone"),
        "INR": CurrencyInfo("INR", 2, "Indian Rupee"),
        "BRL": CurrencyInfo("BRL", 2, "Brazilian Real"),
        # Zero decimal
        "JPY": CurrencyInfo("JPY", 0, "Japanese Yen"),
        "KRW": CurrencyInfo("KRW", 0, "South Korean Won"),
        "CLP": CurrencyInfo("CLP", 0, "Chilean Peso"),
        "VND": CurrencyInfo("VND", 0, "Vietnamese Dong"),
        # Three decimal
        "BHD": CurrencyInfo("BHD", 3, "Bahraini Dinar"),
        "KWD": CurrencyInfo("KWD", 3, "Kuwaiti Dinar"),
        "OMR": CurrencyInfo("OMR", 3, "Omani Rial"),
        "JOD": CurrencyInfo("JOD", 3, "Jordanian Dinar"),
    }

    @classmethod
    def is_valid(cls, code: str) -> bool:
        return code in cls._CURRENCIES

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        return cls._CURRENCIES.get(code)

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        """Decimal places for a currency code; unknown codes raise ValueError."""
        info = cls._CURRENCIES.get(code)
        if info is None:
            raise ValueError(f"Unknown currency code: {code}")
        return info.decimal_places

    @classmethod
    def all_codes(cls) -> frozenset[str]:
        return frozenset(cls._CURRENCIES)
