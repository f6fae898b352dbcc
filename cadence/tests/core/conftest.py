"""Shared fixtures wiring the core services to in-memory fakes."""

from datetime import datetime
from decimal import Decimal

import pytest

from cadence.core.billing_run import BillingRunService
from cadence.core.coupons import CouponService
from cadence.core.cycles import SubscriptionCycleManager
from cadence.core.first_payment import FirstPaymentHandler
from cadence.core.models import (
    BillingConfig,
    Coupon,
    CouponDiscountType,
    Owner,
)
from cadence.core.owners import OwnerService
from cadence.tests.fakes import (
    MONTHLY,
    WEEKLY_USD,
    YEARLY,
    FakeBillingStore,
    FakeClock,
    FakeCouponCatalog,
    FakeMandateProvider,
    FakePlanCatalog,
    RecordingEventSink,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeBillingStore:
    return FakeBillingStore()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def plans() -> FakePlanCatalog:
    return FakePlanCatalog(MONTHLY, YEARLY, WEEKLY_USD)


@pytest.fixture
def coupon_catalog(clock: FakeClock) -> FakeCouponCatalog:
    return FakeCouponCatalog(
        Coupon(
            name="five-off",
            discount_type=CouponDiscountType.FIXED,
            amount=500,
            description="Five euro off",
        ),
        Coupon(
            name="half-off",
            discount_type=CouponDiscountType.PERCENTAGE,
            percentage=Decimal("50"),
            times=2,
        ),
        Coupon(
            name="once",
            discount_type=CouponDiscountType.FIXED,
            amount=100,
            once_per_owner=True,
        ),
        Coupon(
            name="limited",
            discount_type=CouponDiscountType.FIXED,
            amount=100,
            max_redemptions=1,
        ),
        Coupon(
            name="dollar-off",
            discount_type=CouponDiscountType.FIXED,
            amount=100,
            currency="USD",
        ),
        Coupon(
            name="expired",
            discount_type=CouponDiscountType.FIXED,
            amount=100,
            expires_at=datetime(2023, 12, 31, tzinfo=clock.now().tzinfo),
        ),
    )


@pytest.fixture
def mandates() -> FakeMandateProvider:
    return FakeMandateProvider({"mdt_valid"})


@pytest.fixture
def config() -> BillingConfig:
    return BillingConfig()


@pytest.fixture
def coupons(store, coupon_catalog, clock, events) -> CouponService:
    return CouponService(store=store, catalog=coupon_catalog, clock=clock, events=events)


@pytest.fixture
def cycles(store, plans, coupons, clock, events) -> SubscriptionCycleManager:
    return SubscriptionCycleManager(
        store=store, plans=plans, coupons=coupons, clock=clock, events=events
    )


@pytest.fixture
def owner_service(store, cycles, coupons, mandates, clock, events, config) -> OwnerService:
    return OwnerService(
        store=store,
        cycles=cycles,
        coupons=coupons,
        mandates=mandates,
        clock=clock,
        events=events,
        config=config,
    )


@pytest.fixture
def billing_run(store, cycles, coupons, clock, events) -> BillingRunService:
    return BillingRunService(
        store=store, cycles=cycles, coupons=coupons, clock=clock, events=events
    )


@pytest.fixture
def first_payments(store, cycles, clock, events) -> FirstPaymentHandler:
    return FirstPaymentHandler(store=store, cycles=cycles, clock=clock, events=events)


@pytest.fixture
def owner(store: FakeBillingStore) -> Owner:
    """A stored owner with a valid mandate and 21% tax."""
    return store.add_owner(
        Owner(
            id="owner-1",
            tax_percentage=Decimal("21"),
            mandate_id="mdt_valid",
            customer_id="cst_1",
        )
    )
