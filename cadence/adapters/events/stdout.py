"""Stdout event sink adapter.

Implements EventSinkPort by printing one human-readable line per event,
with amounts rendered in the configured locale.
"""

import asyncio
import logging

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
from cadence.core.money import Money
from cadence.core.ports import EventSinkPort
from cadence.formatting import MoneyFormatter

logger = logging.getLogger(__name__)


class StdoutEventSink(EventSinkPort):
    """Prints events to stdout."""

    def __init__(self, formatter: MoneyFormatter):
        self.formatter = formatter

    async def dispatch(self, event: BillingEvent) -> None:
        await asyncio.to_thread(print, self.format_event(event))

    def format_event(self, event: BillingEvent) -> str:
        """Render one event as ``<timestamp> <EventName> <details>``."""
        return f"{event.occurred_at.isoformat()} {event.name} {self._details(event)}".rstrip()

    def _details(self, event: BillingEvent) -> str:
        if isinstance(event, OrderCreated):
            order = event.order
            return (
                f"order={order.id} owner={order.owner_id} "
                f"total={self.formatter.format(order.total_money)}"
            )
        if isinstance(event, CouponApplied):
            return (
                f"owner={event.owner_id} coupon={event.coupon_name} "
                f"discount={self.formatter.format_amount(event.amount)}"
            )
        if isinstance(event, FirstPaymentPaid):
            return (
                f"owner={event.owner.id} mandate={event.mandate_id} "
                f"order={event.order.id} "
                f"total={self.formatter.format(Money(event.order.total, event.order.currency))}"
            )
        if isinstance(event, MandateCleared):
            return f"owner={event.owner.id} old_mandate={event.old_mandate_id}"
        if isinstance(event, SubscriptionPlanSwapped):
            sub = event.subscription
            return f"subscription={sub.id} plan={event.previous_plan}->{sub.plan}"
        if isinstance(event, SubscriptionQuantityUpdated):
            sub = event.subscription
            return f"subscription={sub.id} quantity={event.previous_quantity}->{sub.quantity}"
        if isinstance(event, (SubscriptionStarted, SubscriptionCancelled)):
            sub = event.subscription
            return f"subscription={sub.id} owner={sub.owner_id} plan={sub.plan}"
        return ""
