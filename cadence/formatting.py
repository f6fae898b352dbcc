"""Locale-aware money formatting.

Wraps Babel's CLDR data so amounts render the way the configured locale
writes them, e.g. 100000 EUR cents under ``de_DE`` -> ``1.000,00 €``.
"""

from babel.core import Locale, UnknownLocaleError
from babel.numbers import format_currency, get_currency_symbol

from cadence.core.models import BillingConfig
from cadence.core.money import Money


class MoneyFormatter:
    """Formats Money for display in one currency and locale."""

    def __init__(self, currency: str, locale: str):
        try:
            Locale.parse(locale)
        except (UnknownLocaleError, ValueError) as e:
            raise ValueError(f"Unknown locale: {locale!r}") from e
        self.currency = currency.upper()
        self.locale = locale

    @classmethod
    def from_config(cls, config: BillingConfig) -> "MoneyFormatter":
        return cls(config.currency, config.currency_locale)

    def format(self, money: Money) -> str:
        """Render an amount in its own currency using this formatter's locale."""
        return format_currency(money.as_decimal(), money.currency, locale=self.locale)

    def format_amount(self, amount: int) -> str:
        """Render minor units in the configured currency."""
        return self.format(Money(amount, self.currency))

    def currency_symbol(self) -> str:
        return get_currency_symbol(self.currency, locale=self.locale)
