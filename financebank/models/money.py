"""
Exact-decimal money helpers.

Every amount in the ledger is a Decimal quantized to its currency's minor
unit. Stores persist integer minor units so no backend ever sees a float.
"""

from decimal import Decimal, InvalidOperation


# ISO 4217 minor-unit exponents that differ from the usual 2
_EXPONENT_OVERRIDES = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
}


def currency_exponent(currency: str) -> int:
    """Number of decimal places in the currency's minor unit."""
    return _EXPONENT_OVERRIDES.get(currency.upper(), 2)


def currency_quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-currency_exponent(currency))


def coerce_decimal(value) -> Decimal:
    """
    Convert caller input to Decimal.

    Floats are refused outright: a binary float cannot be trusted to
    carry the exact amount the user typed.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("Amounts must be Decimal, int or str, never float")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Not a valid amount: {value!r}")
    if not result.is_finite():
        raise ValueError("Amount must be a finite number")
    return result


def check_precision(amount: Decimal, currency: str) -> Decimal:
    """
    Return the amount quantized to the currency's minor unit.

    Raises ValueError if that would drop digits. We never round silently.
    """
    quantum = currency_quantum(currency)
    quantized = amount.quantize(quantum)
    if quantized != amount:
        raise ValueError(
            f"{currency} amounts allow at most {currency_exponent(currency)} decimal places"
        )
    return quantized


def to_minor_units(amount: Decimal, currency: str) -> int:
    return int(check_precision(amount, currency).scaleb(currency_exponent(currency)))


def from_minor_units(units: int, currency: str) -> Decimal:
    return Decimal(units).scaleb(-currency_exponent(currency)).quantize(
        currency_quantum(currency)
    )
