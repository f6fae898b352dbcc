"""Tests for the stdout and logging event sinks."""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cadence.adapters.events.log import LoggingEventSink, event_fields
from cadence.adapters.events.stdout import StdoutEventSink
from cadence.core.events import (
    CouponApplied,
    FirstPaymentPaid,
    MandateCleared,
    OrderCreated,
    SubscriptionPlanSwapped,
    SubscriptionQuantityUpdated,
    SubscriptionStarted,
)
from cadence.core.models import Order, OrderItem, Owner, Subscription
from cadence.formatting import MoneyFormatter

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def order() -> Order:
    item = OrderItem(
        id="item-1",
        owner_id="owner-1",
        currency="EUR",
        unit_price=100000,
        quantity=1,
        tax_percentage=Decimal("21"),
        process_at=NOW,
    )
    return Order.from_items("order-1", "owner-1", [item], NOW)


@pytest.fixture
def subscription() -> Subscription:
    return Subscription(
        id="sub-1",
        owner_id="owner-1",
        name="default",
        plan="yearly",
        quantity=3,
        cycle_started_at=NOW,
        cycle_ends_at=NOW,
    )


@pytest.fixture
def sink() -> StdoutEventSink:
    return StdoutEventSink(MoneyFormatter("EUR", "de_DE"))


def _plain(text: str) -> str:
    # CLDR puts a no-break space between amount and symbol
    return text.replace("\xa0", " ")


class TestStdoutEventSink:
    def test_order_created(self, sink, order):
        line = _plain(sink.format_event(OrderCreated(occurred_at=NOW, order=order)))

        assert line == (
            "2024-01-15T12:00:00+00:00 OrderCreated "
            "order=order-1 owner=owner-1 total=1.210,00 €"
        )

    def test_coupon_applied(self, sink):
        event = CouponApplied(
            occurred_at=NOW,
            owner_id="owner-1",
            coupon_name="welcome",
            discount_item_id="item-2",
            amount=500,
        )

        assert _plain(sink.format_event(event)).endswith("coupon=welcome discount=5,00 €")

    def test_subscription_events(self, sink, subscription):
        swapped = SubscriptionPlanSwapped(
            occurred_at=NOW, subscription=subscription, previous_plan="monthly"
        )
        updated = SubscriptionQuantityUpdated(
            occurred_at=NOW, subscription=subscription, previous_quantity=1
        )

        assert sink.format_event(swapped).endswith("subscription=sub-1 plan=monthly->yearly")
        assert sink.format_event(updated).endswith("subscription=sub-1 quantity=1->3")

    def test_mandate_events(self, sink, order):
        owner = Owner(id="owner-1", mandate_id="mdt_2")
        cleared = MandateCleared(occurred_at=NOW, old_mandate_id="mdt_1", owner=owner)
        paid = FirstPaymentPaid(occurred_at=NOW, owner=owner, order=order, mandate_id="mdt_2")

        assert sink.format_event(cleared).endswith("owner=owner-1 old_mandate=mdt_1")
        assert "mandate=mdt_2 order=order-1" in sink.format_event(paid)

    @pytest.mark.asyncio
    async def test_dispatch_prints_line(self, sink, subscription, capsys):
        await sink.dispatch(SubscriptionStarted(occurred_at=NOW, subscription=subscription))

        captured = capsys.readouterr()
        assert captured.out == (
            "2024-01-15T12:00:00+00:00 SubscriptionStarted "
            "subscription=sub-1 owner=owner-1 plan=yearly\n"
        )


class TestLoggingEventSink:
    @pytest.mark.asyncio
    async def test_dispatch_logs_structured_record(self, order, caplog):
        sink = LoggingEventSink()

        with caplog.at_level(logging.INFO, logger="cadence.adapters.events.log"):
            await sink.dispatch(OrderCreated(occurred_at=NOW, order=order))

        (record,) = caplog.records
        assert record.getMessage() == "Billing event OrderCreated"
        assert record.event == "OrderCreated"
        assert record.order_id == "order-1"
        assert record.total == 121000

    def test_event_fields(self, subscription):
        fields = event_fields(
            SubscriptionPlanSwapped(
                occurred_at=NOW, subscription=subscription, previous_plan="monthly"
            )
        )

        assert fields == {
            "owner_id": "owner-1",
            "subscription_id": "sub-1",
            "plan": "yearly",
            "previous_plan": "monthly",
        }
