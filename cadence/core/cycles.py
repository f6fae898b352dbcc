"""Subscription-cycle manager.

Owns every transition of a subscription's billing cycle: start, plan
swap with proration, quantity change, renewal and cancellation. Each
subscription has exactly one scheduled (unprocessed, future) order item,
referenced by ``scheduled_order_item_id``; processing that item is what
renews the subscription.
"""

import logging
from datetime import datetime
from decimal import Decimal

from . import money
from .coupons import CouponService
from .errors import CurrencyMismatch, InvalidTransition, OwnerNotFound
from .events import (
    OrderCreated,
    SubscriptionCancelled,
    SubscriptionPlanSwapped,
    SubscriptionQuantityUpdated,
)
from .models import (
    CHARGE_KINDS,
    ChangeSet,
    Order,
    OrderItem,
    OrderItemCollection,
    OrderItemKind,
    Owner,
    Plan,
    Subscription,
    SubscriptionStatus,
    new_id,
)
from .ports import BillingStorePort, ClockPort, EventSinkPort, PlanCatalogPort
from .queries import for_subscription, of_kind, processed, select, unprocessed

logger = logging.getLogger(__name__)


def remaining_fraction(started_at: datetime, ends_at: datetime, now: datetime) -> Decimal:
    """Share of the cycle [started_at, ends_at] still ahead of ``now``, in [0, 1]."""
    length = (ends_at - started_at).total_seconds()
    if length <= 0:
        return Decimal("0")
    remaining = Decimal(str((ends_at - now).total_seconds())) / Decimal(str(length))
    return min(max(remaining, Decimal("0")), Decimal("1"))


def check_currency(owner: Owner, plan: Plan) -> None:
    """Raise CurrencyMismatch unless the plan bills in the owner's currency."""
    if plan.currency != owner.currency:
        raise CurrencyMismatch(
            f"Plan {plan.name} is priced in {plan.currency}, "
            f"owner {owner.id} is billed in {owner.currency}"
        )


class SubscriptionCycleManager:
    """Drives subscriptions through their billing cycles."""

    def __init__(
        self,
        store: BillingStorePort,
        plans: PlanCatalogPort,
        coupons: CouponService,
        clock: ClockPort,
        events: EventSinkPort,
    ):
        self.store = store
        self.plans = plans
        self.coupons = coupons
        self.clock = clock
        self.events = events

    def _charge(
        self,
        owner: Owner,
        subscription: Subscription,
        plan: Plan,
        process_at: datetime,
        kind: OrderItemKind,
        unit_price: int | None = None,
        tax_percentage: Decimal | None = None,
    ) -> OrderItem:
        return OrderItem(
            id=new_id(),
            owner_id=owner.id,
            subscription_id=subscription.id,
            currency=plan.currency,
            unit_price=plan.amount if unit_price is None else unit_price,
            quantity=subscription.quantity,
            tax_percentage=(
                owner.tax_percentage if tax_percentage is None else tax_percentage
            ),
            process_at=process_at,
            description=plan.description or plan.name,
            kind=kind,
        )

    async def prepare_start(
        self,
        owner: Owner,
        name: str,
        plan: Plan,
        quantity: int,
        changes: ChangeSet,
        trial_ends_at: datetime | None = None,
        tax_percentage: Decimal | None = None,
        coupon_name: str | None = None,
    ) -> tuple[Subscription, OrderItemCollection]:
        """Build a new subscription and its first items into ``changes``.

        Without a trial the cycle is [now, now + interval] and the item due
        now carries the full charge. With a trial the cycle ends with the
        trial, the item due now is free but keeps the tax percentage, and the
        first real charge is the scheduled item at the trial end.

        Returns:
            The new subscription and the items due now: the start charge
            first, then any discount.

        Raises:
            CurrencyMismatch: If the plan is not priced in the owner's
                currency.
            InvalidTransition: If the owner already holds a valid
                subscription with this name.
            CouponNotFound, CouponExpired, CouponLimitReached: If the coupon
                cannot be redeemed. ``changes`` is left untouched.
        """
        check_currency(owner, plan)
        now = self.clock.now()
        existing = await self.store.get_subscription_by_name(owner.id, name)
        if existing is not None and existing.is_valid(now):
            raise InvalidTransition(
                f"Owner {owner.id} already has a subscription named {name!r}"
            )

        trialing = trial_ends_at is not None and trial_ends_at > now
        cycle_ends_at = trial_ends_at if trialing else plan.interval.add_to(now)
        subscription = Subscription(
            id=new_id(),
            owner_id=owner.id,
            name=name,
            plan=plan.name,
            quantity=quantity,
            cycle_started_at=now,
            cycle_ends_at=cycle_ends_at,
            status=SubscriptionStatus.TRIALING if trialing else SubscriptionStatus.ACTIVE,
            trial_ends_at=trial_ends_at if trialing else None,
        )
        immediate = self._charge(
            owner,
            subscription,
            plan,
            now,
            OrderItemKind.SUBSCRIPTION_START,
            unit_price=0 if trialing else plan.amount,
            tax_percentage=tax_percentage,
        )
        scheduled = self._charge(
            owner, subscription, plan, cycle_ends_at, OrderItemKind.SUBSCRIPTION_CYCLE
        )
        subscription.scheduled_order_item_id = scheduled.id

        pending = ChangeSet(subscriptions=[subscription], new_items=[immediate, scheduled])
        items = OrderItemCollection([immediate])
        if coupon_name is not None:
            redeemed = await self.coupons.prepare_redemption(
                owner, coupon_name, subscription, pending
            )
            if not trialing:
                discount = await self.coupons.prepare_application(
                    redeemed, subscription, immediate, pending
                )
                if discount is not None:
                    items.append(discount)

        changes.merge(pending)
        logger.info(
            f"Prepared subscription {name!r} on plan {plan.name} for owner {owner.id}",
            extra={
                "owner_id": owner.id,
                "subscription_id": subscription.id,
                "trialing": trialing,
            },
        )
        return subscription, items

    async def swap(self, subscription: Subscription, plan_name: str) -> Order | None:
        """Move a subscription to another plan.

        From ACTIVE: credits the unused part of the current cycle's billed
        charge, drops old-plan charges that were never billed, charges the
        new plan in full, restarts the cycle at now and creates an order
        from the credit and the new charge right away.

        From TRIALING: keeps the trial and reschedules the first charge at
        the trial end for the new plan. No order is created.

        Returns:
            The order created for the swap, or None while trialing.

        Raises:
            PlanNotFound: If the new plan is unknown.
            InvalidTransition: If the subscription has ended.
            CurrencyMismatch: If the new plan is not priced in the owner's
                currency.
            OwnerNotFound: If the owner record is missing.
        """
        new_plan = self.plans.find(plan_name)
        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise InvalidTransition(
                f"Subscription {subscription.id} cannot be swapped while "
                f"{subscription.status.value}"
            )
        owner = await self._owner(subscription.owner_id)
        check_currency(owner, new_plan)
        previous_plan = subscription.plan
        now = self.clock.now()
        changes = ChangeSet(subscriptions=[subscription])

        if subscription.status is SubscriptionStatus.TRIALING:
            subscription.begin_swap()
            self._drop_scheduled(subscription, changes)
            scheduled = self._charge(
                owner,
                subscription,
                new_plan,
                subscription.cycle_ends_at,
                OrderItemKind.SUBSCRIPTION_CYCLE,
            )
            changes.new_items.append(scheduled)
            subscription.complete_swap(
                new_plan.name,
                subscription.cycle_started_at,
                subscription.cycle_ends_at,
                trialing=True,
            )
            subscription.scheduled_order_item_id = scheduled.id
            await self.store.apply(changes)
            await self.events.dispatch(
                SubscriptionPlanSwapped(
                    occurred_at=now, subscription=subscription, previous_plan=previous_plan
                )
            )
            return None

        items = await self.store.get_order_items(subscription_id=subscription.id)
        credit = self._proration_credit(subscription, items, owner, now)

        subscription.begin_swap()
        self._drop_scheduled(subscription, changes)
        await self._drop_unbilled(subscription, items, changes)
        charge = self._charge(
            owner, subscription, new_plan, now, OrderItemKind.SUBSCRIPTION_SWAP
        )
        cycle_ends_at = new_plan.interval.add_to(now)
        scheduled = self._charge(
            owner, subscription, new_plan, cycle_ends_at, OrderItemKind.SUBSCRIPTION_CYCLE
        )

        billed = OrderItemCollection([charge] if credit is None else [credit, charge])
        order = Order.from_items(new_id(), owner.id, billed, now)
        for item in billed:
            item.mark_processed(order.id)
        changes.order = order
        changes.new_items.extend([*billed, scheduled])

        subscription.complete_swap(new_plan.name, now, cycle_ends_at, trialing=False)
        subscription.scheduled_order_item_id = scheduled.id
        await self.store.apply(changes)

        logger.info(
            f"Swapped subscription {subscription.id} from {previous_plan} to {new_plan.name}",
            extra={"subscription_id": subscription.id, "order_id": order.id},
        )
        await self.events.dispatch(
            SubscriptionPlanSwapped(
                occurred_at=now, subscription=subscription, previous_plan=previous_plan
            )
        )
        await self.events.dispatch(OrderCreated(occurred_at=now, order=order))
        return order

    def _proration_credit(
        self,
        subscription: Subscription,
        items: OrderItemCollection,
        owner: Owner,
        now: datetime,
    ) -> OrderItem | None:
        """Credit for the unused share of the latest charge in the current cycle."""
        charges = select(
            items,
            processed(),
            of_kind(*CHARGE_KINDS),
            lambda item: item.process_at >= subscription.cycle_started_at,
        )
        if not charges:
            return None
        latest = max(charges, key=lambda item: item.process_at)
        discounts = select(
            items,
            processed(),
            for_subscription(subscription.id),
            of_kind(OrderItemKind.DISCOUNT),
            lambda item: item.process_at == latest.process_at,
        )
        paid = latest.subtotal + discounts.subtotal()
        fraction = remaining_fraction(
            subscription.cycle_started_at, subscription.cycle_ends_at, now
        )
        amount = money.prorate(max(paid, 0), fraction)
        if amount == 0:
            return None
        return OrderItem(
            id=new_id(),
            owner_id=owner.id,
            subscription_id=subscription.id,
            currency=latest.currency,
            unit_price=-amount,
            quantity=1,
            tax_percentage=latest.tax_percentage,
            process_at=now,
            description=f"Unused time on {subscription.plan}",
            kind=OrderItemKind.PRORATION_CREDIT,
        )

    def _drop_scheduled(self, subscription: Subscription, changes: ChangeSet) -> None:
        if subscription.scheduled_order_item_id is not None:
            changes.deleted_item_ids.append(subscription.scheduled_order_item_id)
            subscription.scheduled_order_item_id = None

    async def _drop_unbilled(
        self,
        subscription: Subscription,
        items: OrderItemCollection,
        changes: ChangeSet,
    ) -> None:
        """Delete old-plan charges not yet billed, with their discounts."""
        charges = select(items, unprocessed(), of_kind(*CHARGE_KINDS))
        cycle_keys = {item.process_at for item in charges}
        discounts = select(
            items,
            unprocessed(),
            of_kind(OrderItemKind.DISCOUNT),
            lambda item: item.process_at in cycle_keys,
        )
        for item in [*charges, *discounts]:
            if item.id not in changes.deleted_item_ids:
                changes.deleted_item_ids.append(item.id)
        await self.coupons.prepare_release(subscription, discounts, changes)

    async def update_quantity(self, subscription: Subscription, quantity: int) -> None:
        """Change the quantity of a subscription and of its scheduled item.

        Items already processed keep their quantity.
        """
        previous = subscription.quantity
        subscription.update_quantity(quantity)
        changes = ChangeSet(subscriptions=[subscription])
        if subscription.scheduled_order_item_id is not None:
            scheduled = await self.store.get_order_item(subscription.scheduled_order_item_id)
            if scheduled is not None and scheduled.is_processed(False):
                scheduled.update_quantity(quantity)
                changes.updated_items.append(scheduled)
        await self.store.apply(changes)
        await self.events.dispatch(
            SubscriptionQuantityUpdated(
                occurred_at=self.clock.now(),
                subscription=subscription,
                previous_quantity=previous,
            )
        )

    async def prepare_renewal(
        self,
        subscription: Subscription,
        owner: Owner,
        changes: ChangeSet,
    ) -> OrderItem | None:
        """Advance a subscription whose scheduled item is being processed.

        Ends the trial once its boundary has passed, moves the cycle one
        interval ahead and schedules the next charge at the plan's current
        price and the owner's current tax percentage.

        Returns:
            The next scheduled item, or None if the subscription is ending.
        """
        now = self.clock.now()
        if subscription.status is SubscriptionStatus.TRIALING and not subscription.on_trial(now):
            subscription.activate()
        changes.subscriptions.append(subscription)

        if subscription.ends_at is not None or subscription.is_ended():
            subscription.scheduled_order_item_id = None
            return None

        plan = self.plans.find(subscription.plan)
        subscription.advance_cycle(plan.interval.add_to(subscription.cycle_ends_at))
        scheduled = self._charge(
            owner,
            subscription,
            plan,
            subscription.cycle_ends_at,
            OrderItemKind.SUBSCRIPTION_CYCLE,
        )
        subscription.scheduled_order_item_id = scheduled.id
        changes.new_items.append(scheduled)
        return scheduled

    async def cancel(self, subscription: Subscription) -> None:
        """End a subscription at the end of its current cycle.

        The scheduled charge is removed; nothing further is billed.
        """
        ends_at = subscription.cycle_ends_at
        scheduled_id = subscription.scheduled_order_item_id
        subscription.end(ends_at)
        changes = ChangeSet(subscriptions=[subscription])
        if scheduled_id is not None:
            changes.deleted_item_ids.append(scheduled_id)
        await self.store.apply(changes)
        logger.info(
            f"Cancelled subscription {subscription.id}, ends at {ends_at.isoformat()}",
            extra={"subscription_id": subscription.id},
        )
        await self.events.dispatch(
            SubscriptionCancelled(occurred_at=self.clock.now(), subscription=subscription)
        )

    async def _owner(self, owner_id: str) -> Owner:
        owner = await self.store.get_owner(owner_id)
        if owner is None:
            raise OwnerNotFound(f"Owner {owner_id} not found")
        return owner
