"""Fake plan and coupon catalogs for testing."""

from cadence.core.errors import CouponNotFound, PlanNotFound
from cadence.core.models import Coupon, Interval, Plan
from cadence.core.ports import CouponCatalogPort, PlanCatalogPort


class FakePlanCatalog(PlanCatalogPort):
    def __init__(self, *plans: Plan):
        self.plans = {plan.name: plan for plan in plans}

    def add(self, plan: Plan) -> None:
        self.plans[plan.name] = plan

    def find(self, name: str) -> Plan:
        if name not in self.plans:
            raise PlanNotFound(f"Plan {name!r} not found")
        return self.plans[name]


class FakeCouponCatalog(CouponCatalogPort):
    def __init__(self, *coupons: Coupon):
        self.coupons = {coupon.name: coupon for coupon in coupons}

    def add(self, coupon: Coupon) -> None:
        self.coupons[coupon.name] = coupon

    def find(self, name: str) -> Coupon:
        if name not in self.coupons:
            raise CouponNotFound(f"Coupon {name!r} not found")
        return self.coupons[name]


MONTHLY = Plan(
    name="monthly",
    amount=1000,
    currency="EUR",
    interval=Interval.parse("1 month"),
    description="Monthly payment",
)
YEARLY = Plan(
    name="yearly",
    amount=10000,
    currency="EUR",
    interval=Interval.parse("1 year"),
    description="Yearly payment",
)
WEEKLY_USD = Plan(
    name="weekly-usd",
    amount=300,
    currency="USD",
    interval=Interval.parse("1 week"),
)
