"""Unit tests for completing first payments."""

from decimal import Decimal

import pytest

from cadence.core.errors import InvalidCyclePayload, OwnerNotFound
from cadence.core.events import FirstPaymentPaid, SubscriptionStarted
from cadence.core.first_payment import FirstPayment
from cadence.core.models import Owner, SubscriptionStatus
from cadence.core.money import Money


@pytest.fixture
def new_owner(store) -> Owner:
    return store.add_owner(Owner(id="owner-2", tax_percentage=Decimal("21")))


async def _first_payment(owner_service, owner: Owner, **options) -> FirstPayment:
    builder = await owner_service.new_subscription(owner, "monthly")
    if options.get("trial_days"):
        builder.trial_days(options["trial_days"])
    if options.get("coupon"):
        builder.with_coupon(options["coupon"])
    return await builder.create()


class TestFirstPaymentHandler:
    @pytest.mark.asyncio
    async def test_complete_stores_mandate_and_starts_subscription(
        self, new_owner, owner_service, first_payments, store, events
    ):
        payment = await _first_payment(owner_service, new_owner)

        order = await first_payments.complete(payment, "mdt_new")

        assert store.owners[new_owner.id].mandate_id == "mdt_new"
        subscription = await store.get_subscription_by_name(new_owner.id, "default")
        assert subscription.status is SubscriptionStatus.ACTIVE
        assert order.total == payment.amount.amount == 1210
        assert store.orders[order.id] == order
        processed = store.processed_items()
        assert [item.id for item in processed] == list(order.item_ids)
        assert store.unprocessed_items()[0].id == subscription.scheduled_order_item_id
        assert events.names()[-2:] == ["SubscriptionStarted", "FirstPaymentPaid"]
        (paid,) = events.of_type(FirstPaymentPaid)
        assert paid.mandate_id == "mdt_new"
        assert paid.order.id == order.id

    @pytest.mark.asyncio
    async def test_trial_settles_zero_order(
        self, new_owner, owner_service, first_payments, store, events
    ):
        payment = await _first_payment(owner_service, new_owner, trial_days=14)
        assert payment.amount == Money(5, "EUR")

        order = await first_payments.complete(payment, "mdt_new")

        assert order.total == 0
        (started,) = events.of_type(SubscriptionStarted)
        assert started.subscription.status is SubscriptionStatus.TRIALING

    @pytest.mark.asyncio
    async def test_coupon_in_payload_is_redeemed_and_applied(
        self, new_owner, owner_service, first_payments, store
    ):
        payment = await _first_payment(owner_service, new_owner, coupon="five-off")

        order = await first_payments.complete(payment, "mdt_new")

        assert order.total == payment.amount.amount == 605
        (redeemed,) = await store.get_redeemed_coupons(new_owner.id)
        assert redeemed.name == "five-off"
        assert len(store.applied) == 1

    @pytest.mark.asyncio
    async def test_unknown_owner(self, first_payments, store):
        payment = FirstPayment(
            owner_id="ghost",
            description="Monthly payment",
            amount=Money(1210, "EUR"),
            actions=({"handler": "start_subscription"},),
            webhook_url="mandate-webhook",
        )

        with pytest.raises(OwnerNotFound):
            await first_payments.complete(payment, "mdt_new")
        assert store.apply_call_count == 0

    @pytest.mark.asyncio
    async def test_invalid_payload_writes_nothing(self, new_owner, first_payments, store):
        payment = FirstPayment(
            owner_id=new_owner.id,
            description="Monthly payment",
            amount=Money(1210, "EUR"),
            actions=({"handler": "start_subscription", "version": 1},),
            webhook_url="mandate-webhook",
        )

        with pytest.raises(InvalidCyclePayload):
            await first_payments.complete(payment, "mdt_new")
        assert store.apply_call_count == 0
        assert store.owners[new_owner.id].mandate_id is None

    def test_first_payment_requires_positive_amount_and_actions(self):
        with pytest.raises(ValueError):
            FirstPayment("owner-1", "x", Money(0, "EUR"), ({"handler": "h"},), "hook")
        with pytest.raises(ValueError):
            FirstPayment("owner-1", "x", Money(100, "EUR"), (), "hook")
