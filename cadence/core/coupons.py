"""Coupon redemption and application.

Redemption records the intent to discount. Application materialises the
discount as a negative order item for one billing cycle, at most once
per (redeemed coupon, cycle).
"""

import logging

from .errors import (
    CouponExpired,
    CouponLimitReached,
    CouponNotFound,
    DuplicateCouponApplication,
)
from .events import CouponApplied
from .models import (
    AppliedCoupon,
    ChangeSet,
    CouponDiscountType,
    OrderItem,
    OrderItemKind,
    Owner,
    RedeemedCoupon,
    Subscription,
    new_id,
)
from .ports import BillingStorePort, ClockPort, CouponCatalogPort, EventSinkPort

logger = logging.getLogger(__name__)


class CouponService:
    """Redeems coupons for owners and applies them to charges."""

    def __init__(
        self,
        store: BillingStorePort,
        catalog: CouponCatalogPort,
        clock: ClockPort,
        events: EventSinkPort,
    ):
        self.store = store
        self.catalog = catalog
        self.clock = clock
        self.events = events

    async def redeem(
        self,
        owner: Owner,
        coupon_name: str,
        subscription_name: str | None = None,
        revoke_other_coupons: bool = True,
    ) -> Owner:
        """Redeem a coupon for an owner, optionally scoped to a subscription.

        The coupon is scoped to the named subscription only if the owner
        holds a valid subscription with that name; otherwise it is scoped
        to the owner. No discount is created here.

        Args:
            owner: Owner redeeming the coupon.
            coupon_name: Catalog name of the coupon.
            subscription_name: Subscription to scope the coupon to (optional).
            revoke_other_coupons: Revoke active coupons of the same scope first.

        Returns:
            The owner, for chaining.

        Raises:
            CouponNotFound: If the catalog has no such coupon.
            CouponExpired: If the coupon can no longer be redeemed.
            CouponLimitReached: If a redemption limit was hit.
        """
        subscription = None
        if subscription_name is not None:
            candidate = await self.store.get_subscription_by_name(
                owner.id, subscription_name
            )
            if candidate is not None and candidate.is_valid(self.clock.now()):
                subscription = candidate

        changes = ChangeSet()
        await self.prepare_redemption(
            owner, coupon_name, subscription, changes, revoke_other_coupons
        )
        await self.store.apply(changes)
        return owner

    async def prepare_redemption(
        self,
        owner: Owner,
        coupon_name: str,
        subscription: Subscription | None,
        changes: ChangeSet,
        revoke_other_coupons: bool = True,
    ) -> RedeemedCoupon:
        """Validate a redemption and record it in ``changes``.

        All checks run before anything is added, so a failed redemption
        leaves ``changes`` untouched.
        """
        now = self.clock.now()
        coupon = self.catalog.find(coupon_name)
        if coupon.is_expired(now):
            raise CouponExpired(f"Coupon {coupon_name} expired at {coupon.expires_at}")

        if coupon.max_redemptions is not None:
            redemptions = await self.store.count_redemptions(coupon.name)
            if redemptions >= coupon.max_redemptions:
                raise CouponLimitReached(
                    f"Coupon {coupon.name} reached its limit of "
                    f"{coupon.max_redemptions} redemptions"
                )

        existing = await self.store.get_redeemed_coupons(owner.id)
        if coupon.once_per_owner and any(r.name == coupon.name for r in existing):
            raise CouponLimitReached(
                f"Coupon {coupon.name} can be redeemed only once per owner"
            )

        scope = subscription.id if subscription is not None else None
        if revoke_other_coupons:
            for other in existing:
                if other.subscription_id == scope and other.is_active():
                    other.revoke()
                    changes.redeemed_coupons.append(other)
                    logger.info(
                        f"Revoked coupon {other.name} for owner {owner.id}",
                        extra={"redeemed_coupon_id": other.id, "owner_id": owner.id},
                    )

        redeemed = RedeemedCoupon(
            id=new_id(),
            name=coupon.name,
            owner_id=owner.id,
            redeemed_at=now,
            times_left=coupon.times,
            subscription_id=scope,
        )
        changes.redeemed_coupons.append(redeemed)
        if coupon.max_redemptions is not None:
            # re-checked by the store inside the committing transaction
            changes.redemption_limits[coupon.name] = coupon.max_redemptions
        logger.info(
            f"Owner {owner.id} redeemed coupon {coupon.name}",
            extra={"owner_id": owner.id, "subscription_id": scope},
        )
        return redeemed

    async def apply(
        self,
        redeemed: RedeemedCoupon,
        subscription: Subscription,
        base_item: OrderItem,
    ) -> OrderItem | None:
        """Apply a redeemed coupon to a charge and persist the discount.

        Returns:
            The new discount item, or None if nothing was applied (coupon
            revoked or used up, zero charge, or cycle already discounted).
        """
        changes = ChangeSet()
        discount = await self.prepare_application(redeemed, subscription, base_item, changes)
        if discount is None:
            return None
        try:
            await self.store.apply(changes)
        except DuplicateCouponApplication:
            logger.info(
                f"Coupon {redeemed.name} already applied to cycle {base_item.process_at}",
                extra={"redeemed_coupon_id": redeemed.id},
            )
            redeemed.times_left += 1
            return None

        await self.events.dispatch(
            CouponApplied(
                occurred_at=self.clock.now(),
                owner_id=discount.owner_id,
                coupon_name=redeemed.name,
                discount_item_id=discount.id,
                amount=-discount.subtotal,
            )
        )
        return discount

    async def prepare_application(
        self,
        redeemed: RedeemedCoupon,
        subscription: Subscription,
        base_item: OrderItem,
        changes: ChangeSet,
    ) -> OrderItem | None:
        """Build the discount for one charge into ``changes``.

        The discount item copies currency, tax percentage and
        ``process_at`` from the base item. ``process_at`` identifies the
        discounted cycle.
        """
        if not redeemed.is_active():
            return None
        if base_item.subtotal <= 0:
            # trial charge; the first real charge gets the discount
            return None
        cycle_key = base_item.process_at
        if any(
            a.redeemed_coupon_id == redeemed.id and a.cycle_key == cycle_key
            for a in changes.applied_coupons
        ) or await self.store.has_applied_coupon(redeemed.id, cycle_key):
            return None

        try:
            coupon = self.catalog.find(redeemed.name)
        except CouponNotFound:
            logger.warning(
                f"Coupon {redeemed.name} is no longer in the catalog; "
                f"charge {base_item.id} billed without discount",
                extra={"redeemed_coupon_id": redeemed.id},
            )
            return None
        if (
            coupon.discount_type is CouponDiscountType.FIXED
            and coupon.currency != base_item.currency
        ):
            logger.warning(
                f"Coupon {coupon.name} is in {coupon.currency}, "
                f"charge {base_item.id} in {base_item.currency}; not applied",
                extra={"redeemed_coupon_id": redeemed.id},
            )
            return None
        amount = coupon.discount_for(base_item.subtotal)
        if amount == 0:
            return None

        now = self.clock.now()
        discount = OrderItem(
            id=new_id(),
            owner_id=base_item.owner_id,
            subscription_id=subscription.id,
            currency=base_item.currency,
            unit_price=-amount,
            quantity=1,
            tax_percentage=base_item.tax_percentage,
            process_at=cycle_key,
            description=coupon.description or coupon.name,
            kind=OrderItemKind.DISCOUNT,
        )
        applied = AppliedCoupon(
            id=new_id(),
            redeemed_coupon_id=redeemed.id,
            owner_id=base_item.owner_id,
            subscription_id=subscription.id,
            cycle_key=cycle_key,
            order_item_id=discount.id,
            amount=amount,
            applied_at=now,
        )
        discount.applied_coupon_id = applied.id
        redeemed.consume()

        changes.new_items.append(discount)
        changes.applied_coupons.append(applied)
        if not any(r is redeemed for r in changes.redeemed_coupons):
            changes.redeemed_coupons.append(redeemed)
        return discount

    async def prepare_release(
        self,
        subscription: Subscription,
        discounts: list[OrderItem],
        changes: ChangeSet,
    ) -> None:
        """Give back the uses consumed by discounts deleted before billing."""
        if not discounts:
            return
        applied = {
            a.order_item_id: a.redeemed_coupon_id
            for a in await self.store.get_applied_coupons(subscription.id)
        }
        released = [applied[d.id] for d in discounts if d.id in applied]
        for redeemed in await self.store.get_redeemed_coupons(subscription.owner_id):
            uses = released.count(redeemed.id)
            if uses:
                redeemed.times_left += uses
                changes.redeemed_coupons.append(redeemed)

    async def active_coupons(
        self, owner_id: str, subscription_id: str | None = None
    ) -> list[RedeemedCoupon]:
        """Active coupons of exactly this scope (owner-wide when no subscription)."""
        redeemed = await self.store.get_redeemed_coupons(owner_id)
        return [
            r for r in redeemed if r.is_active() and r.subscription_id == subscription_id
        ]

    async def applicable_coupons(self, subscription: Subscription) -> list[RedeemedCoupon]:
        """Active coupons that discount this subscription's charges.

        Subscription-scoped coupons come first, then owner-wide ones.
        """
        redeemed = await self.store.get_redeemed_coupons(subscription.owner_id)
        active = [r for r in redeemed if r.is_active()]
        scoped = [r for r in active if r.subscription_id == subscription.id]
        owner_wide = [r for r in active if r.subscription_id is None]
        return scoped + owner_wide

    async def revoke(self, redeemed: RedeemedCoupon) -> None:
        """Stop a redeemed coupon from being applied again."""
        redeemed.revoke()
        await self.store.apply(ChangeSet(redeemed_coupons=[redeemed]))

