"""
Module: billing_kernel.db.types
Responsibility: Money rounding helpers.  round_money() is the single sanctioned
    rounding function, so every service and engine rounds amounts
    identically before they are stored.
Architecture position: Kernel > DB.  May be imported by models/, services/,
    selectors/ and engines.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats: amounts are Decimal with 2 decimal places at rest.
    - round_money() is the ONLY rounding function for stored amounts
      (ROUND_HALF_UP).
"""

from decimal import ROUND_HALF_UP, Decimal

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0.00")


def round_money(
    value: Decimal | int | str,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    Preconditions: value is a Decimal, int, or numeric string (never float).
    Postconditions: Returns a Decimal quantized with ROUND_HALF_UP.

    Raises:
        TypeError: If value is a float.
    """
    if isinstance(value, float):
        raise TypeError("round_money() does not accept float; use Decimal")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)


def line_total(quantity: Decimal | int | str, unit_price: Decimal | int | str) -> Decimal:
    """Line item total: quantity * unit_price rounded to cents."""
    return round_money(Decimal(str(quantity)) * Decimal(str(unit_price)))


def floor_at_zero(value: Decimal) -> tuple[Decimal, bool]:
    """Clamp a balance at zero. Returns (clamped_value, was_clamped)."""
    if value < 0:
        return ZERO, True
    return value, False
