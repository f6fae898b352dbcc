"""Unit tests for the billing run."""

import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from cadence.core.errors import CurrencyMismatch
from cadence.core.events import CouponApplied, OrderCreated
from cadence.core.models import ChangeSet, OrderItemKind, Owner

RENEWAL = datetime(2024, 2, 15, 12, 0, tzinfo=timezone.utc)


async def _subscribe(owner_service, owner: Owner, plan: str = "monthly"):
    builder = await owner_service.new_subscription(owner, plan)
    return await builder.create()


@pytest.fixture
def second_owner(store) -> Owner:
    return store.add_owner(Owner(id="owner-2", mandate_id="mdt_valid"))


class TestBillingRun:
    @pytest.mark.asyncio
    async def test_one_order_per_owner_with_only_due_items(
        self, owner, second_owner, owner_service, billing_run, store, events
    ):
        await _subscribe(owner_service, owner)
        await _subscribe(owner_service, second_owner, plan="yearly")

        result = await billing_run.run()

        assert result.owners_processed == 2
        assert result.orders_created == 2
        assert result.items_processed == 2
        assert result.items_scheduled == 0
        assert result.owners_failed == 0
        totals = sorted(order.total for order in store.orders.values())
        assert totals == [1210, 10000]
        # next-cycle charges stay scheduled
        assert len(store.unprocessed_items()) == 2
        assert all(item.process_at > billing_run.clock.now() for item in store.unprocessed_items())
        assert len(events.of_type(OrderCreated)) == 2

    @pytest.mark.asyncio
    async def test_second_run_creates_no_empty_orders(
        self, owner, owner_service, billing_run, store
    ):
        await _subscribe(owner_service, owner)
        await billing_run.run()

        result = await billing_run.run()

        assert result.owners_processed == 0
        assert result.orders_created == 0
        assert len(store.orders) == 1

    @pytest.mark.asyncio
    async def test_renewal_schedules_next_cycle(
        self, owner, owner_service, billing_run, store, clock
    ):
        subscription = await _subscribe(owner_service, owner)
        await billing_run.run()
        clock.set(RENEWAL)

        result = await billing_run.run()

        assert result.orders_created == 1
        assert result.items_scheduled == 1
        renewed = store.subscriptions[subscription.id]
        assert renewed.cycle_started_at == RENEWAL
        assert renewed.cycle_ends_at == datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
        (scheduled,) = store.unprocessed_items()
        assert scheduled.id == renewed.scheduled_order_item_id
        assert scheduled.kind is OrderItemKind.SUBSCRIPTION_CYCLE
        assert scheduled.process_at == renewed.cycle_ends_at

    @pytest.mark.asyncio
    async def test_coupon_discounts_renewal(
        self, owner, owner_service, billing_run, store, clock, events
    ):
        await _subscribe(owner_service, owner)
        await billing_run.run()
        await owner_service.redeem_coupon(owner, "half-off")
        clock.set(RENEWAL)
        events.reset()

        await billing_run.run()

        renewal_order = max(store.orders.values(), key=lambda order: order.created_at)
        assert renewal_order.subtotal == 500
        assert renewal_order.total == 605
        (applied,) = events.of_type(CouponApplied)
        assert applied.coupon_name == "half-off"
        assert applied.amount == 500
        (redeemed,) = await store.get_redeemed_coupons(owner.id)
        assert redeemed.times_left == 1

    @pytest.mark.asyncio
    async def test_conflicting_run_only_skips_that_owner(
        self, owner, second_owner, owner_service, billing_run, store
    ):
        await _subscribe(owner_service, owner)
        await _subscribe(owner_service, second_owner)

        def competing_run(changes: ChangeSet) -> None:
            if changes.order is not None and changes.order.owner_id == owner.id:
                store.claim(changes.claim_item_ids[0], "order-from-other-run")

        store.before_apply = competing_run

        result = await billing_run.run()

        assert result.owners_failed == 1
        assert result.orders_created == 1
        (order,) = store.orders.values()
        assert order.owner_id == second_owner.id

    @pytest.mark.asyncio
    async def test_failing_owner_does_not_stop_the_run(
        self, owner, second_owner, owner_service, billing_run, store
    ):
        await _subscribe(owner_service, owner)
        await _subscribe(owner_service, second_owner)
        store.fail_for_owners = {owner.id}

        result = await billing_run.run()

        assert result.owners_failed == 1
        assert result.owners_processed == 1
        assert [order.owner_id for order in store.orders.values()] == [second_owner.id]
        # the failed owner's charge is still due for the next run
        assert await store.get_owner_ids_with_due_items(billing_run.clock.now()) == [owner.id]

    @pytest.mark.asyncio
    async def test_missing_owner_is_counted_as_failed(
        self, owner, owner_service, billing_run, store
    ):
        await _subscribe(owner_service, owner)
        del store.owners[owner.id]

        result = await billing_run.run()

        assert result.owners_failed == 1
        assert store.orders == {}

    @pytest.mark.asyncio
    async def test_event_sink_failure_keeps_committed_order(
        self, owner, owner_service, billing_run, store, events
    ):
        await _subscribe(owner_service, owner)
        events.set_should_fail(True)

        result = await billing_run.run()

        assert result.orders_created == 1
        assert result.owners_failed == 0
        assert len(store.orders) == 1

    @pytest.mark.asyncio
    async def test_discovery_failure_propagates(self, billing_run, store):
        with patch.object(
            store,
            "get_owner_ids_with_due_items",
            AsyncMock(side_effect=RuntimeError("Database unavailable")),
        ):
            with pytest.raises(RuntimeError, match="Database unavailable"):
                await billing_run.run()

    @pytest.mark.asyncio
    async def test_swap_before_first_run_bills_only_the_new_plan(
        self, owner, owner_service, billing_run, store, clock
    ):
        await _subscribe(owner_service, owner)
        clock.advance(days=1)
        await owner_service.swap(owner, "yearly")

        result = await billing_run.run()

        assert result.orders_created == 0
        assert sum(order.total for order in store.orders.values()) == 12100

    @pytest.mark.asyncio
    async def test_plan_in_another_currency_cannot_block_billing(
        self, owner, owner_service, billing_run, store
    ):
        await _subscribe(owner_service, owner)
        with pytest.raises(CurrencyMismatch):
            await owner_service.new_subscription(owner, "weekly-usd")

        result = await billing_run.run()

        assert result.owners_failed == 0
        assert result.orders_created == 1
        assert {order.currency for order in store.orders.values()} == {"EUR"}

    @pytest.mark.asyncio
    async def test_renewal_bills_when_redeemed_coupon_left_the_catalog(
        self, owner, owner_service, billing_run, store, clock, coupon_catalog, caplog
    ):
        await _subscribe(owner_service, owner)
        await billing_run.run()
        await owner_service.redeem_coupon(owner, "five-off")
        del coupon_catalog.coupons["five-off"]
        clock.set(RENEWAL)

        with caplog.at_level(logging.WARNING, logger="cadence.core.coupons"):
            result = await billing_run.run()

        assert result.orders_created == 1
        assert result.owners_failed == 0
        renewal_order = max(store.orders.values(), key=lambda order: order.created_at)
        assert renewal_order.total == 1210
        assert "no longer in the catalog" in caplog.text
        (redeemed,) = await store.get_redeemed_coupons(owner.id)
        assert redeemed.is_active()
