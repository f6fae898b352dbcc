"""The periodic billing run.

This module turns due order items into orders: one order per owner per
run, with renewals and subscription coupons folded into the same
transaction.
"""

import logging
from datetime import datetime

from .coupons import CouponService
from .cycles import SubscriptionCycleManager
from .errors import ConcurrentProcessingConflict, OwnerNotFound
from .events import BillingEvent, CouponApplied, OrderCreated
from .models import ChangeSet, Order, OrderItemCollection, RunResult, Subscription, new_id
from .ports import BillingRunPort, BillingStorePort, ClockPort, EventSinkPort
from .queries import select, should_process

logger = logging.getLogger(__name__)


class BillingRunService(BillingRunPort):
    """Implements the billing run.

    This service orchestrates, per owner:
    - Claiming every due, unprocessed item into one new order
    - Discounting renewing charges with active coupons
    - Scheduling each renewing subscription's next charge
    """

    def __init__(
        self,
        store: BillingStorePort,
        cycles: SubscriptionCycleManager,
        coupons: CouponService,
        clock: ClockPort,
        events: EventSinkPort,
    ):
        self.store = store
        self.cycles = cycles
        self.coupons = coupons
        self.clock = clock
        self.events = events

    async def run(self) -> RunResult:
        now = self.clock.now()
        try:
            owner_ids = await self.store.get_owner_ids_with_due_items(now)
        except Exception as e:
            logger.error(f"Failed to find owners with due order items: {e}", exc_info=True)
            raise

        orders_created = 0
        items_processed = 0
        items_scheduled = 0
        owners_failed = 0

        for owner_id in owner_ids:
            try:
                outcome = await self._process_owner(owner_id, now)
            except ConcurrentProcessingConflict as e:
                logger.warning(
                    f"Skipped owner {owner_id}, items claimed by another run: {e}",
                    extra={"owner_id": owner_id},
                )
                owners_failed += 1
                continue
            except Exception as e:
                logger.error(
                    f"Failed to process owner {owner_id}: {e}",
                    exc_info=True,
                    extra={"owner_id": owner_id},
                )
                owners_failed += 1
                # Continue with the next owner
                continue

            if outcome is None:
                continue
            order, scheduled = outcome
            orders_created += 1
            items_processed += len(order.item_ids)
            items_scheduled += scheduled

        result = RunResult(
            owners_processed=len(owner_ids) - owners_failed,
            orders_created=orders_created,
            items_processed=items_processed,
            items_scheduled=items_scheduled,
            owners_failed=owners_failed,
            timestamp=now,
        )
        logger.info(
            f"Billing run complete: {orders_created} orders, "
            f"{items_processed} items processed, {owners_failed} owners failed",
            extra={
                "orders_created": orders_created,
                "items_processed": items_processed,
                "items_scheduled": items_scheduled,
                "owners_failed": owners_failed,
            },
        )
        return result

    async def _process_owner(
        self, owner_id: str, now: datetime
    ) -> tuple[Order, int] | None:
        """Process one owner in a single unit of work.

        Returns:
            The created order and the number of newly scheduled items, or
            None if the owner had nothing due after all.
        """
        owner = await self.store.get_owner(owner_id)
        if owner is None:
            raise OwnerNotFound(f"Owner {owner_id} not found")

        due_items = select(await self.store.get_order_items(owner_id=owner_id), should_process(now))
        if not due_items:
            return None

        changes = ChangeSet(claim_item_ids=[item.id for item in due_items])
        discounts = OrderItemCollection()
        coupon_names: dict[str, str] = {}
        scheduled = 0
        subscriptions: dict[str, Subscription | None] = {}

        for item in due_items:
            if item.subscription_id is None:
                continue
            if item.subscription_id not in subscriptions:
                subscriptions[item.subscription_id] = await self.store.get_subscription(
                    item.subscription_id
                )
            subscription = subscriptions[item.subscription_id]
            if subscription is None or subscription.scheduled_order_item_id != item.id:
                continue

            for redeemed in await self.coupons.applicable_coupons(subscription):
                discount = await self.coupons.prepare_application(
                    redeemed, subscription, item, changes
                )
                if discount is not None:
                    discounts.append(discount)
                    coupon_names[discount.id] = redeemed.name

            if await self.cycles.prepare_renewal(subscription, owner, changes) is not None:
                scheduled += 1

        order = Order.from_items(new_id(), owner.id, [*due_items, *discounts], now)
        for item in [*due_items, *discounts]:
            item.mark_processed(order.id)
        changes.order = order
        await self.store.apply(changes)

        logger.info(
            f"Created order {order.id} for owner {owner.id} "
            f"({len(order.item_ids)} items, total {order.total} {order.currency})",
            extra={"owner_id": owner.id, "order_id": order.id},
        )
        await self._dispatch(OrderCreated(occurred_at=now, order=order))
        for discount in discounts:
            await self._dispatch(
                CouponApplied(
                    occurred_at=now,
                    owner_id=owner.id,
                    coupon_name=coupon_names[discount.id],
                    discount_item_id=discount.id,
                    amount=-discount.subtotal,
                )
            )
        return order, scheduled

    async def _dispatch(self, event: BillingEvent) -> None:
        """Deliver an event for work already committed."""
        try:
            await self.events.dispatch(event)
        except Exception as e:
            logger.error(f"Failed to dispatch {event.name}: {e}", exc_info=True)
