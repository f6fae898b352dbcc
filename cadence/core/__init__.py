"""Core domain logic for the Cadence billing engine.

This package contains zero external dependencies and represents
the pure business logic of the application. All adapters and
external integrations are handled by the adapters package.
"""

from .models import (
    AppliedCoupon,
    BillingConfig,
    ChangeSet,
    Coupon,
    CouponDiscountType,
    Interval,
    IntervalUnit,
    Order,
    OrderItem,
    OrderItemCollection,
    OrderItemKind,
    Owner,
    Plan,
    RedeemedCoupon,
    RedeemedCouponStatus,
    RunResult,
    Subscription,
    SubscriptionStatus,
)
from .money import Money

__all__ = [
    "AppliedCoupon",
    "BillingConfig",
    "ChangeSet",
    "Coupon",
    "CouponDiscountType",
    "Interval",
    "IntervalUnit",
    "Money",
    "Order",
    "OrderItem",
    "OrderItemCollection",
    "OrderItemKind",
    "Owner",
    "Plan",
    "RedeemedCoupon",
    "RedeemedCouponStatus",
    "RunResult",
    "Subscription",
    "SubscriptionStatus",
]
