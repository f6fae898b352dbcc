"""Money arithmetic for order items.

Every amount is an integer number of minor units (cents). Only the tax
percentage is fractional, and it is carried as a ``Decimal`` so that no
binary floating point ever touches an amount. Rounding is half-up to the
nearest minor unit.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

MINOR_UNIT_EXPONENT = -2

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Coerce a numeric value to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_half_up(value: Decimal | int) -> int:
    """Round to the nearest integer, ties away from zero (94.5 -> 95, -94.5 -> -95)."""
    return int(to_decimal(value).quantize(_ONE, rounding=ROUND_HALF_UP))


def subtotal(unit_price: int, quantity: int) -> int:
    """Subtotal of a line, tax excluded."""
    return unit_price * quantity


def tax(subtotal_amount: int, tax_percentage: Decimal | int | float | str) -> int:
    """Tax owed on a subtotal at the given percentage."""
    return round_half_up(Decimal(subtotal_amount) * to_decimal(tax_percentage) / _HUNDRED)


def total(unit_price: int, quantity: int, tax_percentage: Decimal | int | float | str) -> int:
    """Subtotal plus tax."""
    amount = subtotal(unit_price, quantity)
    return amount + tax(amount, tax_percentage)


def percentage_of(amount: int, percentage: Decimal | int | float | str) -> int:
    """``amount * percentage / 100``, rounded half-up."""
    return round_half_up(Decimal(amount) * to_decimal(percentage) / _HUNDRED)


def prorate(amount: int, fraction: Decimal) -> int:
    """Scale an amount by a fraction in [0, 1], rounded half-up."""
    if fraction < 0 or fraction > 1:
        raise ValueError(f"fraction must be within [0, 1], got {fraction}")
    return round_half_up(Decimal(amount) * fraction)


@dataclass(frozen=True)
class Money:
    """An integer amount of minor units tagged with its currency."""

    amount: int
    currency: str

    def __post_init__(self) -> None:
        if not isinstance(self.amount, int) or isinstance(self.amount, bool):
            raise TypeError(f"amount must be an int of minor units, got {self.amount!r}")
        if not self.currency or len(self.currency) != 3:
            raise ValueError(f"currency must be a 3-letter ISO code, got {self.currency!r}")
        object.__setattr__(self, "currency", self.currency.upper())

    @property
    def value(self) -> str:
        """Major-unit string, e.g. ``535`` cents -> ``"5.35"``."""
        return format(Decimal(self.amount).scaleb(MINOR_UNIT_EXPONENT), "f")

    def as_decimal(self) -> Decimal:
        return Decimal(self.amount).scaleb(MINOR_UNIT_EXPONENT)

    def to_payload(self) -> dict[str, str]:
        return {"value": self.value, "currency": self.currency}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Money":
        """Parse ``{"value": "5.35", "currency": "EUR"}``.

        Raises:
            ValueError: If the value is not a number with at most two decimals.
        """
        try:
            major = Decimal(str(payload["value"]))
        except (KeyError, InvalidOperation) as e:
            raise ValueError(f"Invalid money payload: {payload!r}") from e
        minor = major.scaleb(-MINOR_UNIT_EXPONENT)
        if minor != minor.to_integral_value():
            raise ValueError(f"Money value has more than two decimals: {payload['value']}")
        return cls(amount=int(minor), currency=str(payload["currency"]))

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def is_zero(self) -> bool:
        return self.amount == 0

    def _check_currency(self, other: "Money") -> None:
        if other.currency != self.currency:
            raise ValueError(
                f"Cannot combine {self.currency} and {other.currency} amounts"
            )
