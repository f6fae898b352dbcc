"""Port interfaces for the Cadence billing engine.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - BillingStorePort: Persist owners, subscriptions, order items, orders, coupons
   - MandateProviderPort: Ask the payment provider whether a mandate is usable
   - CouponCatalogPort: Resolve coupon definitions by name
   - PlanCatalogPort: Resolve plan definitions by name
   - EventSinkPort: Deliver lifecycle events
   - ClockPort: Injectable source of "now"

2. **Driving Ports** (adapters/external systems call into core)
   - BillingRunPort: Entry point for the periodic billing run
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .events import BillingEvent
from .models import (
    AppliedCoupon,
    ChangeSet,
    Coupon,
    Order,
    OrderItem,
    OrderItemCollection,
    Owner,
    Plan,
    RedeemedCoupon,
    RunResult,
    Subscription,
)


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class BillingStorePort(ABC):
    """Port for durable billing records.

    Reads are plain lookups; every write goes through ``apply()``, which
    commits a whole ChangeSet in one transaction.

    Implementations must handle:
    - Atomic claiming of unprocessed items (conditional update or row lock)
    - Uniqueness of (redeemed coupon, cycle) applications
    - Timezone-aware UTC timestamps in and out
    """

    @abstractmethod
    async def get_owner(self, owner_id: str) -> Owner | None:
        """Retrieve an owner by ID, or None if unknown."""

    @abstractmethod
    async def save_owner(self, owner: Owner) -> None:
        """Insert or update an owner outside of a ChangeSet.

        Used for registration and standalone owner updates (tax rate,
        mandate) that touch no other record.
        """

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Retrieve a subscription by ID, or None if unknown."""

    @abstractmethod
    async def get_subscription_by_name(
        self, owner_id: str, name: str
    ) -> Subscription | None:
        """Retrieve the owner's most recently started subscription with this name.

        Args:
            owner_id: Owner holding the subscription.
            name: Subscription slot name (e.g. "default").

        Returns:
            Subscription if found (ended or not), None otherwise.
        """

    @abstractmethod
    async def get_subscriptions(self, owner_id: str) -> list[Subscription]:
        """All subscriptions held by an owner, oldest first."""

    @abstractmethod
    async def get_order_item(self, item_id: str) -> OrderItem | None:
        """Retrieve an order item by ID, or None if unknown."""

    @abstractmethod
    async def get_order_items(
        self,
        owner_id: str | None = None,
        subscription_id: str | None = None,
        order_id: str | None = None,
    ) -> OrderItemCollection:
        """Retrieve order items matching every given filter.

        Args:
            owner_id: Only items of this owner (optional).
            subscription_id: Only items of this subscription (optional).
            order_id: Only items processed into this order (optional).

        Returns:
            Matching items ordered by process_at, then creation order.
        """

    @abstractmethod
    async def get_owner_ids_with_due_items(self, now: datetime) -> list[str]:
        """IDs of owners holding at least one unprocessed item due at ``now``.

        Discovery only: the caller re-reads and claims the items per owner.
        """

    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None:
        """Retrieve an order by ID, or None if unknown."""

    @abstractmethod
    async def get_orders(self, owner_id: str) -> list[Order]:
        """All orders of an owner, oldest first."""

    @abstractmethod
    async def get_redeemed_coupons(
        self, owner_id: str, subscription_id: str | None = None
    ) -> list[RedeemedCoupon]:
        """Redeemed coupons of an owner, oldest first.

        Args:
            owner_id: Owner that redeemed the coupons.
            subscription_id: If given, only coupons scoped to this subscription.
        """

    @abstractmethod
    async def count_redemptions(self, coupon_name: str) -> int:
        """Number of times a coupon was redeemed by anyone, revoked ones included."""

    @abstractmethod
    async def has_applied_coupon(
        self, redeemed_coupon_id: str, cycle_key: datetime
    ) -> bool:
        """Whether a redeemed coupon already discounted the given cycle."""

    @abstractmethod
    async def get_applied_coupons(self, subscription_id: str) -> list[AppliedCoupon]:
        """Applied coupons of a subscription, oldest first."""

    @abstractmethod
    async def apply(self, changes: ChangeSet) -> None:
        """Commit a ChangeSet atomically.

        Order of effects inside the transaction: upsert owners and
        subscriptions, delete items, insert the order, claim the listed
        unprocessed items into it, insert new items, update items, upsert
        redeemed coupons, check ``redemption_limits``, insert applied
        coupons.

        A subscription is written only if the stored row still carries its
        ``version``; on commit each written subscription's ``version`` is
        incremented in place.

        Raises:
            ConcurrentProcessingConflict: If any claimed, updated or deleted
                item is no longer unprocessed, or a subscription was written
                by someone else since it was loaded. Nothing is written.
            CouponLimitReached: If a coupon would exceed its redemption
                limit. Nothing is written.
            DuplicateCouponApplication: If an applied coupon repeats an
                existing (redeemed coupon, cycle) pair. Nothing is written.
            Exception: If the database is unavailable.
        """


class MandateProviderPort(ABC):
    """Port for asking the payment provider about an owner's mandate.

    Implementations should fail fast; retry and backoff belong to the
    calling layer.
    """

    @abstractmethod
    async def is_mandate_valid(self, owner: Owner) -> bool:
        """Whether the owner's mandate can be charged without the owner present.

        Returns:
            False if the owner has no mandate or the provider reports it
            invalid or revoked.

        Raises:
            Exception: If the provider is unreachable.
        """


class CouponCatalogPort(ABC):
    """Port for resolving coupon definitions."""

    @abstractmethod
    def find(self, name: str) -> Coupon:
        """Resolve a coupon by name.

        Raises:
            CouponNotFound: If no coupon has this name.
        """


class PlanCatalogPort(ABC):
    """Port for resolving plan definitions."""

    @abstractmethod
    def find(self, name: str) -> Plan:
        """Resolve a plan by name.

        Raises:
            PlanNotFound: If no plan has this name.
        """


class EventSinkPort(ABC):
    """Port for delivering lifecycle events.

    Fire-and-forget from the core's point of view. Delivery guarantees
    are the adapter's responsibility.
    """

    @abstractmethod
    async def dispatch(self, event: BillingEvent) -> None:
        """Deliver one event."""


class ClockPort(ABC):
    """Port for the current time, so trial and cycle boundaries are testable."""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""


# ============================================================================
# DRIVING PORTS (Adapters/external systems call into core)
# ============================================================================


class BillingRunPort(ABC):
    """Port for executing one billing run.

    Driving port: the daemon scheduler invokes this on a fixed interval.
    The implementation lives in the core (billing_run.py).
    """

    @abstractmethod
    async def run(self) -> RunResult:
        """Process every due, unprocessed order item into per-owner orders.

        High-level flow:
        1. Find owners holding due, unprocessed order items
        2. Per owner: claim the due items into one new Order, apply
           subscription coupons to renewing charges, schedule the next
           cycle's items
        3. Commit each owner's work in its own transaction

        A failure for one owner is logged and counted; the remaining owners
        are still processed and the failed one is retried on the next run.

        Returns:
            RunResult summarising the run.
        """
