"""Logging event sink adapter.

Implements EventSinkPort by emitting one INFO record per event, with the
event's identifiers attached as structured ``extra`` fields.
"""

import logging
from typing import Any

from cadence.core.events import (
    BillingEvent,
    CouponApplied,
    FirstPaymentPaid,
    MandateCleared,
    OrderCreated,
    SubscriptionCancelled,
    SubscriptionPlanSwapped,
    SubscriptionQuantityUpdated,
    SubscriptionStarted,
)
from cadence.core.ports import EventSinkPort

logger = logging.getLogger(__name__)


class LoggingEventSink(EventSinkPort):
    """Writes events to the application log."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def dispatch(self, event: BillingEvent) -> None:
        fields = event_fields(event)
        logger.log(
            self.level,
            f"Billing event {event.name}",
            extra={"event": event.name, "occurred_at": event.occurred_at.isoformat(), **fields},
        )


def event_fields(event: BillingEvent) -> dict[str, Any]:
    """Flatten the identifying fields of an event."""
    if isinstance(event, OrderCreated):
        return {
            "owner_id": event.order.owner_id,
            "order_id": event.order.id,
            "total": event.order.total,
            "currency": event.order.currency,
        }
    if isinstance(event, CouponApplied):
        return {
            "owner_id": event.owner_id,
            "coupon": event.coupon_name,
            "order_item_id": event.discount_item_id,
            "amount": event.amount,
        }
    if isinstance(event, FirstPaymentPaid):
        return {
            "owner_id": event.owner.id,
            "order_id": event.order.id,
            "mandate_id": event.mandate_id,
        }
    if isinstance(event, MandateCleared):
        return {"owner_id": event.owner.id, "old_mandate_id": event.old_mandate_id}
    if isinstance(
        event,
        (
            SubscriptionStarted,
            SubscriptionCancelled,
            SubscriptionPlanSwapped,
            SubscriptionQuantityUpdated,
        ),
    ):
        fields: dict[str, Any] = {
            "owner_id": event.subscription.owner_id,
            "subscription_id": event.subscription.id,
            "plan": event.subscription.plan,
        }
        if isinstance(event, SubscriptionPlanSwapped):
            fields["previous_plan"] = event.previous_plan
        if isinstance(event, SubscriptionQuantityUpdated):
            fields["previous_quantity"] = event.previous_quantity
        return fields
    return {}
