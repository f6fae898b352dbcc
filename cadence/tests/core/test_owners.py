"""Unit tests for owner-facing operations."""

from datetime import timedelta
from decimal import Decimal

import pytest

from cadence.core.builders import MandatedSubscriptionBuilder
from cadence.core.errors import SubscriptionNotFound
from cadence.core.events import MandateCleared
from cadence.core.models import Owner, SubscriptionStatus
from cadence.tests.fakes import DEFAULT_NOW

NOW = DEFAULT_NOW


class TestOwnerService:
    @pytest.mark.asyncio
    async def test_clear_mandate_dispatches_event(self, owner, owner_service, store, events):
        await owner_service.clear_mandate(owner)

        assert store.owners[owner.id].mandate_id is None
        (event,) = events.of_type(MandateCleared)
        assert event.old_mandate_id == "mdt_valid"
        assert event.owner.id == owner.id

    @pytest.mark.asyncio
    async def test_tax_percentage(self, owner, owner_service, store):
        assert owner_service.tax_percentage(owner) == Decimal("21")

        await owner_service.update_tax_percentage(owner, "19.5")

        assert store.owners[owner.id].tax_percentage == Decimal("19.5")
        with pytest.raises(ValueError):
            await owner_service.update_tax_percentage(owner, -1)

    @pytest.mark.asyncio
    async def test_subscription_lifecycle_through_owner(
        self, owner, owner_service, store, clock
    ):
        assert not await owner_service.subscribed(owner)
        with pytest.raises(SubscriptionNotFound):
            await owner_service.subscription_or_fail(owner)

        builder = await owner_service.new_subscription(owner, "monthly")
        assert isinstance(builder, MandatedSubscriptionBuilder)
        await builder.create()
        assert await owner_service.subscribed(owner)

        await owner_service.update_quantity(owner, 2)
        assert (await owner_service.subscription(owner)).quantity == 2

        await owner_service.swap(owner, "yearly")
        assert (await owner_service.subscription(owner)).plan == "yearly"

        await owner_service.cancel(owner)
        subscription = await owner_service.subscription_or_fail(owner)
        assert subscription.status is SubscriptionStatus.ENDED
        assert await owner_service.subscribed(owner)

        clock.set(subscription.ends_at)
        assert not await owner_service.subscribed(owner)

    @pytest.mark.asyncio
    async def test_on_trial(self, owner, owner_service, store):
        assert not await owner_service.on_trial(owner)

        generic = store.add_owner(Owner(id="owner-2", trial_ends_at=NOW + timedelta(days=3)))
        assert owner_service.on_generic_trial(generic)
        assert await owner_service.on_trial(generic)

        builder = await owner_service.new_subscription(owner, "monthly")
        await builder.trial_days(7).create()
        assert await owner_service.on_trial(owner)
        assert not owner_service.on_generic_trial(owner)

    @pytest.mark.asyncio
    async def test_redeem_coupon_defaults_to_default_subscription(
        self, owner, owner_service, store
    ):
        builder = await owner_service.new_subscription(owner, "monthly")
        subscription = await builder.create()

        await owner_service.redeem_coupon(owner, "five-off")

        (redeemed,) = await store.get_redeemed_coupons(owner.id)
        assert redeemed.subscription_id == subscription.id
