"""Tests for locale-aware money formatting."""

import pytest

from cadence.core.models import BillingConfig
from cadence.core.money import Money
from cadence.formatting import MoneyFormatter


def _plain(text: str) -> str:
    return text.replace("\xa0", " ")


class TestMoneyFormatter:
    def test_german_locale(self):
        formatter = MoneyFormatter.from_config(BillingConfig())

        assert _plain(formatter.format_amount(100000)) == "1.000,00 €"
        assert _plain(formatter.format_amount(535)) == "5,35 €"
        assert _plain(formatter.format_amount(-912345)) == "-9.123,45 €"
        assert formatter.currency_symbol() == "€"

    def test_english_locale(self):
        formatter = MoneyFormatter("usd", "en_US")

        assert formatter.format(Money(123456, "USD")) == "$1,234.56"
        assert formatter.currency == "USD"

    def test_negative_amount(self):
        formatter = MoneyFormatter("EUR", "en_US")

        assert formatter.format_amount(-500) == "-€5.00"

    def test_unknown_locale(self):
        with pytest.raises(ValueError, match="Unknown locale"):
            MoneyFormatter("EUR", "xx_YY")
