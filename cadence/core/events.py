"""Lifecycle events dispatched to the event sink.

Events are immutable snapshots taken when the mutating operation
completes. Delivery guarantees belong to the sink.
"""

from dataclasses import dataclass
from datetime import datetime

from .models import Order, Owner, Subscription


@dataclass(frozen=True)
class BillingEvent:
    """Base class for all dispatched events."""

    occurred_at: datetime

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class MandateCleared(BillingEvent):
    old_mandate_id: str | None
    owner: Owner


@dataclass(frozen=True)
class SubscriptionStarted(BillingEvent):
    subscription: Subscription


@dataclass(frozen=True)
class SubscriptionPlanSwapped(BillingEvent):
    subscription: Subscription
    previous_plan: str


@dataclass(frozen=True)
class SubscriptionQuantityUpdated(BillingEvent):
    subscription: Subscription
    previous_quantity: int


@dataclass(frozen=True)
class SubscriptionCancelled(BillingEvent):
    subscription: Subscription


@dataclass(frozen=True)
class CouponApplied(BillingEvent):
    owner_id: str
    coupon_name: str
    discount_item_id: str
    amount: int


@dataclass(frozen=True)
class OrderCreated(BillingEvent):
    order: Order


@dataclass(frozen=True)
class FirstPaymentPaid(BillingEvent):
    owner: Owner
    order: Order
    mandate_id: str
