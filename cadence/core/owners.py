"""Owner-facing billing operations."""

import logging
from decimal import Decimal

from . import money
from .builders import SubscriptionBuilder, new_subscription
from .coupons import CouponService
from .cycles import SubscriptionCycleManager
from .errors import SubscriptionNotFound
from .events import MandateCleared
from .models import BillingConfig, Order, Owner, Subscription
from .ports import BillingStorePort, ClockPort, EventSinkPort, MandateProviderPort

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION = "default"


class OwnerService:
    """Reads and updates an owner's billing state.

    The tax percentage is frozen on every order item when it is created;
    changing it only affects items created afterwards.
    """

    def __init__(
        self,
        store: BillingStorePort,
        cycles: SubscriptionCycleManager,
        coupons: CouponService,
        mandates: MandateProviderPort,
        clock: ClockPort,
        events: EventSinkPort,
        config: BillingConfig,
    ):
        self.store = store
        self.cycles = cycles
        self.coupons = coupons
        self.mandates = mandates
        self.clock = clock
        self.events = events
        self.config = config

    def tax_percentage(self, owner: Owner) -> Decimal:
        return owner.tax_percentage

    async def update_tax_percentage(
        self, owner: Owner, tax_percentage: Decimal | int | str
    ) -> None:
        rate = money.to_decimal(tax_percentage)
        if rate < 0:
            raise ValueError(f"tax_percentage must be non-negative, got {rate}")
        owner.tax_percentage = rate
        await self.store.save_owner(owner)

    async def clear_mandate(self, owner: Owner) -> None:
        """Forget the owner's mandate and announce it.

        The next subscription goes through a first payment again.
        """
        old_mandate_id = owner.mandate_id
        owner.mandate_id = None
        await self.store.save_owner(owner)
        logger.info(
            f"Cleared mandate for owner {owner.id}",
            extra={"owner_id": owner.id, "old_mandate_id": old_mandate_id},
        )
        await self.events.dispatch(
            MandateCleared(
                occurred_at=self.clock.now(), old_mandate_id=old_mandate_id, owner=owner
            )
        )

    async def subscription(
        self, owner: Owner, name: str = DEFAULT_SUBSCRIPTION
    ) -> Subscription | None:
        return await self.store.get_subscription_by_name(owner.id, name)

    async def subscription_or_fail(
        self, owner: Owner, name: str = DEFAULT_SUBSCRIPTION
    ) -> Subscription:
        subscription = await self.subscription(owner, name)
        if subscription is None:
            raise SubscriptionNotFound(f"Owner {owner.id} has no subscription named {name!r}")
        return subscription

    async def subscribed(self, owner: Owner, name: str = DEFAULT_SUBSCRIPTION) -> bool:
        subscription = await self.subscription(owner, name)
        return subscription is not None and subscription.is_valid(self.clock.now())

    async def on_trial(self, owner: Owner, name: str = DEFAULT_SUBSCRIPTION) -> bool:
        """Whether the owner is on a generic trial or the named subscription is trialing."""
        now = self.clock.now()
        if owner.on_generic_trial(now):
            return True
        subscription = await self.subscription(owner, name)
        return subscription is not None and subscription.on_trial(now)

    def on_generic_trial(self, owner: Owner) -> bool:
        return owner.on_generic_trial(self.clock.now())

    async def new_subscription(
        self, owner: Owner, plan_name: str, name: str = DEFAULT_SUBSCRIPTION
    ) -> SubscriptionBuilder:
        return await new_subscription(
            owner, name, plan_name, self.cycles, self.mandates, self.config
        )

    async def redeem_coupon(
        self,
        owner: Owner,
        coupon_name: str,
        subscription_name: str | None = DEFAULT_SUBSCRIPTION,
        revoke_other_coupons: bool = True,
    ) -> Owner:
        return await self.coupons.redeem(
            owner, coupon_name, subscription_name, revoke_other_coupons
        )

    async def swap(
        self, owner: Owner, plan_name: str, name: str = DEFAULT_SUBSCRIPTION
    ) -> Order | None:
        subscription = await self.subscription_or_fail(owner, name)
        return await self.cycles.swap(subscription, plan_name)

    async def update_quantity(
        self, owner: Owner, quantity: int, name: str = DEFAULT_SUBSCRIPTION
    ) -> None:
        subscription = await self.subscription_or_fail(owner, name)
        await self.cycles.update_quantity(subscription, quantity)

    async def cancel(self, owner: Owner, name: str = DEFAULT_SUBSCRIPTION) -> None:
        subscription = await self.subscription_or_fail(owner, name)
        await self.cycles.cancel(subscription)
