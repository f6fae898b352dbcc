"""Static plan and coupon catalogs.

Definitions are read once from JSON files and validated with pydantic
before being converted into core models. File layout::

    {
      "plans": {
        "monthly": {
          "amount": {"value": "10.00", "currency": "EUR"},
          "interval": "1 month",
          "description": "Monthly payment"
        }
      }
    }

    {
      "coupons": {
        "welcome": {
          "type": "fixed",
          "discount": {"value": "5.00", "currency": "EUR"},
          "times": 3
        },
        "half-off": {"type": "percentage", "percentage": "50"}
      }
    }
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from cadence.core.errors import CouponNotFound, PlanNotFound
from cadence.core.models import Coupon, CouponDiscountType, Interval, Plan
from cadence.core.money import Money
from cadence.core.ports import CouponCatalogPort, PlanCatalogPort

logger = logging.getLogger(__name__)


class MoneyDefinition(BaseModel):
    value: Decimal
    currency: str = Field(min_length=3, max_length=3)

    def to_money(self) -> Money:
        return Money.from_payload({"value": str(self.value), "currency": self.currency})


class PlanDefinition(BaseModel):
    amount: MoneyDefinition
    interval: str
    description: str = ""

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        Interval.parse(v)
        return v

    def to_plan(self, name: str) -> Plan:
        price = self.amount.to_money()
        return Plan(
            name=name,
            amount=price.amount,
            currency=price.currency,
            interval=Interval.parse(self.interval),
            description=self.description,
        )


class CouponDefinition(BaseModel):
    type: Literal["fixed", "percentage"]
    discount: MoneyDefinition | None = None
    percentage: Decimal = Decimal("0")
    times: int = Field(default=1, ge=1)
    max_redemptions: int | None = Field(default=None, ge=1)
    once_per_owner: bool = False
    expires_at: datetime | None = None
    description: str = ""

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime | None) -> datetime | None:
        """Require an explicit offset so expiry compares against UTC now."""
        if v is not None and v.tzinfo is None:
            raise ValueError("expires_at must include a timezone offset")
        return v

    def to_coupon(self, name: str, default_currency: str) -> Coupon:
        if self.type == "fixed":
            if self.discount is None:
                raise ValueError(f"Fixed coupon {name!r} needs a discount amount")
            discount = self.discount.to_money()
            return Coupon(
                name=name,
                discount_type=CouponDiscountType.FIXED,
                amount=discount.amount,
                currency=discount.currency,
                times=self.times,
                max_redemptions=self.max_redemptions,
                once_per_owner=self.once_per_owner,
                expires_at=self.expires_at,
                description=self.description,
            )
        return Coupon(
            name=name,
            discount_type=CouponDiscountType.PERCENTAGE,
            percentage=self.percentage,
            currency=default_currency,
            times=self.times,
            max_redemptions=self.max_redemptions,
            once_per_owner=self.once_per_owner,
            expires_at=self.expires_at,
            description=self.description,
        )


def _load_section(path: str | Path, section: str) -> dict[str, Any]:
    """Read one top-level mapping out of a JSON catalog file."""
    path = Path(path)
    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    entries = data.get(section, {})
    if not isinstance(entries, dict):
        raise ValueError(f"{path}: '{section}' must be an object keyed by name")
    return entries


class StaticPlanCatalog(PlanCatalogPort):
    """Plan catalog backed by an in-memory mapping."""

    def __init__(self, plans: dict[str, Plan] | None = None):
        self._plans = dict(plans or {})

    @classmethod
    def from_dict(cls, entries: dict[str, Any]) -> "StaticPlanCatalog":
        """Build the catalog from raw definitions.

        Raises:
            ValueError: If a definition is invalid.
        """
        plans = {}
        for name, raw in entries.items():
            try:
                plans[name] = PlanDefinition.model_validate(raw).to_plan(name)
            except ValidationError as e:
                raise ValueError(f"Invalid plan {name!r}: {e}") from e
        return cls(plans)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticPlanCatalog":
        catalog = cls.from_dict(_load_section(path, "plans"))
        logger.info(f"Loaded {len(catalog)} plans from {path}")
        return catalog

    def __len__(self) -> int:
        return len(self._plans)

    def names(self) -> list[str]:
        return sorted(self._plans)

    def find(self, name: str) -> Plan:
        try:
            return self._plans[name]
        except KeyError:
            raise PlanNotFound(f"Plan {name!r} not found") from None


class StaticCouponCatalog(CouponCatalogPort):
    """Coupon catalog backed by an in-memory mapping."""

    def __init__(self, coupons: dict[str, Coupon] | None = None):
        self._coupons = dict(coupons or {})

    @classmethod
    def from_dict(
        cls, entries: dict[str, Any], default_currency: str = "EUR"
    ) -> "StaticCouponCatalog":
        """Build the catalog from raw definitions.

        Percentage coupons have no amount of their own and take
        ``default_currency``.

        Raises:
            ValueError: If a definition is invalid.
        """
        coupons = {}
        for name, raw in entries.items():
            try:
                definition = CouponDefinition.model_validate(raw)
            except ValidationError as e:
                raise ValueError(f"Invalid coupon {name!r}: {e}") from e
            coupons[name] = definition.to_coupon(name, default_currency)
        return cls(coupons)

    @classmethod
    def from_file(
        cls, path: str | Path, default_currency: str = "EUR"
    ) -> "StaticCouponCatalog":
        """Load coupons from a JSON file; a missing file means no coupons."""
        if not Path(path).exists():
            logger.warning(f"Coupon catalog {path} not found, no coupons available")
            return cls()
        catalog = cls.from_dict(_load_section(path, "coupons"), default_currency)
        logger.info(f"Loaded {len(catalog)} coupons from {path}")
        return catalog

    def __len__(self) -> int:
        return len(self._coupons)

    def find(self, name: str) -> Coupon:
        try:
            return self._coupons[name]
        except KeyError:
            raise CouponNotFound(f"Coupon {name!r} not found") from None
