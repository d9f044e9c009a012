"""
Currency Conversion

Converts amounts between currencies through INR, the same pivot the wallet
screen uses: amount -> INR -> target. Rates come from settings and are
"1 unit = N INR".

All arithmetic is Decimal. Results are rounded half-up to the target
currency's minor unit, and only at the very end of a conversion.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from financebank.config import get_settings
from financebank.models.money import coerce_decimal, currency_exponent, currency_quantum


CURRENCY_SYMBOLS = {
    "INR": "₹",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "AUD": "A$",
}


class UnsupportedCurrencyError(Exception):
    """No exchange rate is configured for this currency."""

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"No exchange rate configured for {currency}")


class CurrencyConverter:
    """Exact-decimal conversion using a fixed rate table."""

    def __init__(self, rates_to_inr: Optional[dict[str, Decimal]] = None):
        rates = rates_to_inr if rates_to_inr is not None else get_settings().currency.rates_to_inr
        self._rates = {code.upper(): Decimal(rate) for code, rate in rates.items()}
        self._rates.setdefault("INR", Decimal("1"))

    @property
    def supported_currencies(self) -> list[str]:
        return sorted(self._rates)

    def rate_to_inr(self, currency: str) -> Decimal:
        try:
            return self._rates[currency.upper()]
        except KeyError:
            raise UnsupportedCurrencyError(currency.upper())

    def convert(self, amount, from_currency: str, to_currency: str) -> Decimal:
        """
        Convert an amount, rounding once to the target's minor unit.

        Raises:
            UnsupportedCurrencyError: If either currency has no rate
            ValueError: If the amount is not an exact number
        """
        value = coerce_decimal(amount)
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return value.quantize(currency_quantum(to_currency), rounding=ROUND_HALF_UP)

        inr_amount = value * self.rate_to_inr(from_currency)
        converted = inr_amount / self.rate_to_inr(to_currency)
        return converted.quantize(currency_quantum(to_currency), rounding=ROUND_HALF_UP)

    def exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Units of to_currency per one unit of from_currency (4 places)."""
        rate = self.rate_to_inr(from_currency) / self.rate_to_inr(to_currency)
        return rate.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

    def total_in(self, amounts: dict[str, Decimal], currency: str) -> Decimal:
        """Sum amounts held in several currencies, expressed in one currency."""
        inr_total = sum(
            (coerce_decimal(value) * self.rate_to_inr(code) for code, value in amounts.items()),
            Decimal("0"),
        )
        converted = inr_total / self.rate_to_inr(currency)
        return converted.quantize(currency_quantum(currency), rounding=ROUND_HALF_UP)


def _group_indian(digits: str) -> str:
    """12345678 -> 1,23,45,678 (lakh/crore grouping)."""
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def format_currency(amount, currency: str = "INR") -> str:
    """
    Format an amount for display.

    INR uses Indian digit grouping (₹10,32,450.32); other currencies use
    groups of three. JPY and other zero-exponent currencies show no decimals.
    """
    currency = currency.upper()
    value = coerce_decimal(amount).quantize(currency_quantum(currency), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    text = f"{abs(value):f}"
    whole, _, fraction = text.partition(".")

    if currency == "INR":
        whole = _group_indian(whole)
    else:
        whole = f"{int(whole):,}"

    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    if currency_exponent(currency) == 0:
        return f"{sign}{symbol}{whole}"
    return f"{sign}{symbol}{whole}.{fraction}"
