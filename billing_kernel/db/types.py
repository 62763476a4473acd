"""
Module: billing_kernel.db.types
Responsibility: Currency minor units and the single sanctioned money
    rounding function.
Architecture position: Kernel > DB.  Importable from every layer.

Invariants enforced:
    - round_money() is the ONLY rounding function for monetary values.
      Amounts are rounded to the currency minor unit, ROUND_HALF_UP.
    - No floats: every amount is a Decimal.
"""

from decimal import Decimal, ROUND_HALF_UP

DEFAULT_ROUNDING = ROUND_HALF_UP

# Processor currencies without a minor unit
ZERO_DECIMAL_CURRENCIES: frozenset[str] = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def currency_decimal_places(currency: str) -> int:
    """Minor-unit exponent for a currency code (0 for JPY, 2 for USD)."""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def money_from_minor_units(value: int, currency: str) -> Decimal:
    """
    Convert a processor integer amount into major units.

    Example:
        money_from_minor_units(1050, "usd") -> Decimal("10.50")
        money_from_minor_units(500, "jpy") -> Decimal("500")
    """
    places = currency_decimal_places(currency)
    return Decimal(value).scaleb(-places)


def round_money(
    value: Decimal,
    decimal_places: int = 2,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    This is the only sanctioned rounding function for money; every fee,
    allocation and average goes through it.

    Args:
        value: The Decimal value to round.
        decimal_places: Minor-unit exponent of the currency.
        rounding: Rounding mode (default: ROUND_HALF_UP).

    Returns:
        Rounded Decimal value.
    """
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)
