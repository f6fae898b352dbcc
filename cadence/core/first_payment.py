"""First payments: collecting a mandate before subscribing.

An owner without a usable mandate pays a first payment up front. The
payment carries the payloads of the actions to run once it is paid;
completing it stores the new mandate and executes those actions, folding
the items they produce into one order that the payment settles.
"""

import logging
from dataclasses import dataclass
from typing import Any

from .actions import action_from_payload
from .cycles import SubscriptionCycleManager
from .errors import OwnerNotFound
from .events import FirstPaymentPaid, SubscriptionStarted
from .models import ChangeSet, Order, OrderItemCollection, new_id
from .money import Money
from .ports import BillingStorePort, ClockPort, EventSinkPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FirstPayment:
    """A request for a mandate-creating payment.

    Nothing about the owner's subscriptions changes until the payment is
    completed.
    """

    owner_id: str
    description: str
    amount: Money
    actions: tuple[dict[str, Any], ...]
    webhook_url: str

    def __post_init__(self) -> None:
        if self.amount.amount <= 0:
            raise ValueError(f"first payment amount must be positive, got {self.amount.value}")
        if not self.actions:
            raise ValueError("a first payment needs at least one action")


class FirstPaymentHandler:
    """Completes paid first payments."""

    def __init__(
        self,
        store: BillingStorePort,
        cycles: SubscriptionCycleManager,
        clock: ClockPort,
        events: EventSinkPort,
    ):
        self.store = store
        self.cycles = cycles
        self.clock = clock
        self.events = events

    async def complete(self, first_payment: FirstPayment, mandate_id: str) -> Order:
        """Store the mandate and execute the payment's actions.

        Everything is committed in one unit of work: the owner's new
        mandate, the started subscriptions with their scheduled items, and
        one processed order holding the items the payment covered.

        Raises:
            OwnerNotFound: If the owner no longer exists.
            InvalidCyclePayload: If an action payload cannot be rebuilt.
        """
        owner = await self.store.get_owner(first_payment.owner_id)
        if owner is None:
            raise OwnerNotFound(f"Owner {first_payment.owner_id} not found")

        owner.mandate_id = mandate_id
        actions = [
            action_from_payload(payload, owner, self.cycles)
            for payload in first_payment.actions
        ]

        changes = ChangeSet(owners=[owner])
        items = OrderItemCollection()
        for action in actions:
            items.extend(await action.prepare(changes))

        now = self.clock.now()
        order = Order.from_items(new_id(), owner.id, items, now)
        for item in items:
            item.mark_processed(order.id)
        changes.order = order
        await self.store.apply(changes)

        logger.info(
            f"Completed first payment for owner {owner.id}: "
            f"{len(actions)} actions, order {order.id}",
            extra={"owner_id": owner.id, "order_id": order.id, "mandate_id": mandate_id},
        )
        for action in actions:
            await self.events.dispatch(
                SubscriptionStarted(occurred_at=now, subscription=action.subscription)
            )
        await self.events.dispatch(
            FirstPaymentPaid(occurred_at=now, owner=owner, order=order, mandate_id=mandate_id)
        )
        return order
