"""Domain models for the Cadence billing engine.

All models in this module use only Python standard library types,
ensuring zero external dependencies in the core domain. Amounts are
integer minor units; tax percentages are Decimals.
"""

import calendar
import re
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from . import money
from .errors import InvalidTransition
from .money import Money


def new_id() -> str:
    """Generate a new entity id (UUID4 string)."""
    return str(uuid.uuid4())


class IntervalUnit(Enum):
    """Calendar units a billing interval can be expressed in."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


_INTERVAL_PATTERN = re.compile(r"^\s*(\d+)\s+(day|week|month|year)s?\s*$", re.IGNORECASE)


def _add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping to the last day of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class Interval:
    """Length of one billing cycle, e.g. ``1 month`` or ``14 days``."""

    count: int
    unit: IntervalUnit

    def __post_init__(self) -> None:
        if self.count < 1:
            raise ValueError(f"interval count must be >= 1, got {self.count}")

    @classmethod
    def parse(cls, text: str) -> "Interval":
        """Parse ``"<count> <unit>"`` (unit may be plural)."""
        match = _INTERVAL_PATTERN.match(text)
        if match is None:
            raise ValueError(f"Invalid interval: {text!r}")
        return cls(count=int(match.group(1)), unit=IntervalUnit(match.group(2).lower()))

    def add_to(self, moment: datetime) -> datetime:
        if self.unit is IntervalUnit.DAY:
            return moment + timedelta(days=self.count)
        if self.unit is IntervalUnit.WEEK:
            return moment + timedelta(weeks=self.count)
        if self.unit is IntervalUnit.MONTH:
            return _add_months(moment, self.count)
        return _add_months(moment, 12 * self.count)

    def __str__(self) -> str:
        suffix = "" if self.count == 1 else "s"
        return f"{self.count} {self.unit.value}{suffix}"


@dataclass(frozen=True)
class Plan:
    """A catalog entry resolving a plan name to price and interval."""

    name: str
    amount: int  # minor units per unit of quantity
    currency: str
    interval: Interval
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("plan name must be a non-empty string")
        if self.amount < 0:
            raise ValueError(f"plan amount must be non-negative, got {self.amount}")
        object.__setattr__(self, "currency", self.currency.upper())

    @property
    def price(self) -> Money:
        return Money(self.amount, self.currency)


@dataclass
class Owner:
    """A billable entity (an account, a team, ...).

    Mutable: the mandate and tax percentage change over the owner's life.
    """

    id: str
    tax_percentage: Decimal = Decimal("0")
    currency: str = "EUR"
    mandate_id: str | None = None
    customer_id: str | None = None  # payment provider customer reference
    trial_ends_at: datetime | None = None  # generic, subscription-less trial

    def __post_init__(self) -> None:
        self.tax_percentage = money.to_decimal(self.tax_percentage)
        if self.tax_percentage < 0:
            raise ValueError(
                f"tax_percentage must be non-negative, got {self.tax_percentage}"
            )
        self.currency = self.currency.upper()

    def on_generic_trial(self, now: datetime) -> bool:
        return self.trial_ends_at is not None and self.trial_ends_at > now


class SubscriptionStatus(Enum):
    """Lifecycle states of a subscription.

    - TRIALING: started with a trial that has not yet run out
    - ACTIVE: being charged every cycle
    - SWAP_PENDING: a plan swap is being applied (transient)
    - ENDED: cancelled; no further items are scheduled
    """

    TRIALING = "trialing"
    ACTIVE = "active"
    SWAP_PENDING = "swap_pending"
    ENDED = "ended"


_SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.TRIALING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.SWAP_PENDING, SubscriptionStatus.ENDED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.SWAP_PENDING, SubscriptionStatus.ENDED}
    ),
    SubscriptionStatus.SWAP_PENDING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
    ),
    SubscriptionStatus.ENDED: frozenset(),
}


@dataclass
class Subscription:
    """A named, recurring charge held by one owner.

    State Transitions:
        - TRIALING → ACTIVE (activate, once the trial boundary has passed)
        - TRIALING | ACTIVE → SWAP_PENDING (begin_swap)
        - SWAP_PENDING → ACTIVE | TRIALING (complete_swap)
        - TRIALING | ACTIVE → ENDED (end)

    Note: This dataclass is intentionally mutable; swaps, quantity changes
    and renewals update it in place before it is persisted.
    """

    id: str
    owner_id: str
    name: str
    plan: str
    quantity: int
    cycle_started_at: datetime
    cycle_ends_at: datetime
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    trial_ends_at: datetime | None = None
    ends_at: datetime | None = None
    scheduled_order_item_id: str | None = None
    version: int = 0  # bumped by the store on every committed write

    def __post_init__(self) -> None:
        """Validate subscription invariants on creation or deserialization."""
        if self.quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {self.quantity}")
        if self.cycle_ends_at < self.cycle_started_at:
            raise ValueError(
                f"cycle_ends_at ({self.cycle_ends_at}) cannot be before "
                f"cycle_started_at ({self.cycle_started_at})"
            )

    def on_trial(self, now: datetime) -> bool:
        return self.trial_ends_at is not None and self.trial_ends_at > now

    def is_ended(self) -> bool:
        return self.status is SubscriptionStatus.ENDED

    def is_valid(self, now: datetime) -> bool:
        """Not ended, or cancelled but still inside its paid cycle."""
        if self.status is not SubscriptionStatus.ENDED:
            return True
        return self.ends_at is not None and self.ends_at > now

    def _transition(self, target: SubscriptionStatus) -> None:
        if target not in _SUBSCRIPTION_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Subscription {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def begin_swap(self) -> None:
        self._transition(SubscriptionStatus.SWAP_PENDING)

    def complete_swap(
        self,
        plan: str,
        cycle_started_at: datetime,
        cycle_ends_at: datetime,
        trialing: bool,
    ) -> None:
        if self.status is not SubscriptionStatus.SWAP_PENDING:
            raise InvalidTransition(f"Subscription {self.id} has no swap in progress")
        self.plan = plan
        self.cycle_started_at = cycle_started_at
        self.cycle_ends_at = cycle_ends_at
        self._transition(
            SubscriptionStatus.TRIALING if trialing else SubscriptionStatus.ACTIVE
        )

    def activate(self) -> None:
        """End the trial phase."""
        self._transition(SubscriptionStatus.ACTIVE)

    def end(self, ends_at: datetime) -> None:
        self._transition(SubscriptionStatus.ENDED)
        self.ends_at = ends_at
        self.scheduled_order_item_id = None

    def advance_cycle(self, cycle_ends_at: datetime) -> None:
        """Start the next cycle where the current one ends."""
        if cycle_ends_at < self.cycle_ends_at:
            raise ValueError("next cycle cannot end before the current one")
        self.cycle_started_at = self.cycle_ends_at
        self.cycle_ends_at = cycle_ends_at

    def update_quantity(self, quantity: int) -> None:
        if quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {quantity}")
        if self.is_ended():
            raise InvalidTransition(f"Subscription {self.id} has ended")
        self.quantity = quantity


class OrderItemKind(Enum):
    """What produced an order item."""

    SUBSCRIPTION_START = "subscription_start"
    SUBSCRIPTION_CYCLE = "subscription_cycle"
    SUBSCRIPTION_SWAP = "subscription_swap"
    PRORATION_CREDIT = "proration_credit"
    DISCOUNT = "discount"


CHARGE_KINDS = frozenset(
    {
        OrderItemKind.SUBSCRIPTION_START,
        OrderItemKind.SUBSCRIPTION_CYCLE,
        OrderItemKind.SUBSCRIPTION_SWAP,
    }
)


@dataclass
class OrderItem:
    """A single monetary line, due at ``process_at``.

    Unprocessed while ``order_id`` is None. Once folded into an order the
    item is never mutated again. Subtotal, tax and total are derived from
    the stored fields on every access.
    """

    id: str
    owner_id: str
    currency: str
    unit_price: int
    quantity: int
    tax_percentage: Decimal
    process_at: datetime
    description: str = ""
    kind: OrderItemKind = OrderItemKind.SUBSCRIPTION_CYCLE
    subscription_id: str | None = None
    order_id: str | None = None
    applied_coupon_id: str | None = None

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {self.quantity}")
        self.tax_percentage = money.to_decimal(self.tax_percentage)
        self.currency = self.currency.upper()

    @property
    def subtotal(self) -> int:
        return money.subtotal(self.unit_price, self.quantity)

    @property
    def tax(self) -> int:
        return money.tax(self.subtotal, self.tax_percentage)

    @property
    def total(self) -> int:
        return self.subtotal + self.tax

    @property
    def subtotal_money(self) -> Money:
        return Money(self.subtotal, self.currency)

    @property
    def tax_money(self) -> Money:
        return Money(self.tax, self.currency)

    @property
    def total_money(self) -> Money:
        return Money(self.total, self.currency)

    def is_processed(self, processed: bool = True) -> bool:
        return (self.order_id is not None) is processed

    def mark_processed(self, order_id: str) -> None:
        if self.order_id is not None:
            raise InvalidTransition(
                f"Order item {self.id} was already processed into order {self.order_id}"
            )
        self.order_id = order_id

    def update_quantity(self, quantity: int) -> None:
        if self.order_id is not None:
            raise InvalidTransition(f"Order item {self.id} is processed and immutable")
        if quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {quantity}")
        self.quantity = quantity


class OrderItemCollection(list[OrderItem]):
    """Ordered list of order items with a few aggregate helpers."""

    def owner_ids(self) -> set[str]:
        return {item.owner_id for item in self}

    def currencies(self) -> set[str]:
        return {item.currency for item in self}

    def total(self) -> int:
        return sum(item.total for item in self)

    def subtotal(self) -> int:
        return sum(item.subtotal for item in self)

    def where(self, *predicates: Callable[[OrderItem], bool]) -> "OrderItemCollection":
        return OrderItemCollection(
            item for item in self if all(predicate(item) for predicate in predicates)
        )


@dataclass(frozen=True)
class Order:
    """A payer-scoped receipt for the items processed in one pass."""

    id: str
    owner_id: str
    currency: str
    subtotal: int
    tax: int
    total: int
    created_at: datetime
    item_ids: tuple[str, ...]

    @classmethod
    def from_items(
        cls,
        order_id: str,
        owner_id: str,
        items: Iterable[OrderItem],
        created_at: datetime,
    ) -> "Order":
        """Aggregate items into an order.

        Raises:
            ValueError: If there are no items, or items belong to another
                owner or mix currencies.
        """
        items = list(items)
        if not items:
            raise ValueError("An order needs at least one order item")
        foreign = [item.id for item in items if item.owner_id != owner_id]
        if foreign:
            raise ValueError(f"Order items {foreign} do not belong to owner {owner_id}")
        currencies = {item.currency for item in items}
        if len(currencies) > 1:
            raise ValueError(f"Order items mix currencies: {sorted(currencies)}")
        return cls(
            id=order_id,
            owner_id=owner_id,
            currency=items[0].currency,
            subtotal=sum(item.subtotal for item in items),
            tax=sum(item.tax for item in items),
            total=sum(item.total for item in items),
            created_at=created_at,
            item_ids=tuple(item.id for item in items),
        )

    @property
    def total_money(self) -> Money:
        return Money(self.total, self.currency)


class CouponDiscountType(Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


@dataclass(frozen=True)
class Coupon:
    """A named discount definition from the coupon catalog."""

    name: str
    discount_type: CouponDiscountType
    amount: int = 0  # minor units, FIXED only
    percentage: Decimal = Decimal("0")  # PERCENTAGE only
    currency: str = "EUR"
    times: int = 1  # number of billing cycles discounted per redemption
    max_redemptions: int | None = None
    once_per_owner: bool = False
    expires_at: datetime | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("coupon name must be a non-empty string")
        object.__setattr__(self, "percentage", money.to_decimal(self.percentage))
        object.__setattr__(self, "currency", self.currency.upper())
        if self.amount < 0:
            raise ValueError(f"amount must be non-negative, got {self.amount}")
        if not Decimal("0") <= self.percentage <= Decimal("100"):
            raise ValueError(f"percentage must be within [0, 100], got {self.percentage}")
        if self.times < 1:
            raise ValueError(f"times must be >= 1, got {self.times}")
        if self.max_redemptions is not None and self.max_redemptions < 1:
            raise ValueError(f"max_redemptions must be >= 1, got {self.max_redemptions}")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def discount_for(self, subtotal: int) -> int:
        """Positive discount for a base subtotal; never exceeds it."""
        if subtotal <= 0:
            return 0
        if self.discount_type is CouponDiscountType.FIXED:
            return min(self.amount, subtotal)
        return money.percentage_of(subtotal, self.percentage)


class RedeemedCouponStatus(Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass
class RedeemedCoupon:
    """Records that an owner (optionally for one subscription) redeemed a coupon."""

    id: str
    name: str
    owner_id: str
    redeemed_at: datetime
    times_left: int
    status: RedeemedCouponStatus = RedeemedCouponStatus.ACTIVE
    subscription_id: str | None = None

    def __post_init__(self) -> None:
        if self.times_left < 0:
            raise ValueError(f"times_left must be non-negative, got {self.times_left}")

    def is_active(self) -> bool:
        return self.status is RedeemedCouponStatus.ACTIVE and self.times_left > 0

    def revoke(self) -> None:
        """Stop further application. Discount items already created stay."""
        if self.status is RedeemedCouponStatus.REVOKED:
            raise InvalidTransition(f"Redeemed coupon {self.id} is already revoked")
        self.status = RedeemedCouponStatus.REVOKED

    def consume(self) -> None:
        if not self.is_active():
            raise InvalidTransition(f"Redeemed coupon {self.id} cannot be applied")
        self.times_left -= 1


@dataclass(frozen=True)
class AppliedCoupon:
    """A discount realised for one billing cycle.

    Unique per (redeemed_coupon_id, cycle_key).
    """

    id: str
    redeemed_coupon_id: str
    owner_id: str
    subscription_id: str
    cycle_key: datetime  # process_at of the discounted charge
    order_item_id: str
    amount: int  # positive discount in minor units
    applied_at: datetime


@dataclass
class ChangeSet:
    """All writes of one operation, applied by the store as a single transaction.

    ``claim_item_ids`` lists existing unprocessed items to fold into
    ``order``; the store must refuse the whole set if any of them was
    already claimed. Updated and deleted items must still be unprocessed,
    and each subscription must still carry the ``version`` it was loaded
    with. ``redemption_limits`` maps coupon names to the maximum number of
    redemptions allowed once the set is written.
    """

    order: Order | None = None
    claim_item_ids: list[str] = field(default_factory=list)
    new_items: list[OrderItem] = field(default_factory=list)
    updated_items: list[OrderItem] = field(default_factory=list)
    deleted_item_ids: list[str] = field(default_factory=list)
    owners: list[Owner] = field(default_factory=list)
    subscriptions: list[Subscription] = field(default_factory=list)
    redeemed_coupons: list[RedeemedCoupon] = field(default_factory=list)
    applied_coupons: list[AppliedCoupon] = field(default_factory=list)
    redemption_limits: dict[str, int] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.order
            or self.claim_item_ids
            or self.new_items
            or self.updated_items
            or self.deleted_item_ids
            or self.owners
            or self.subscriptions
            or self.redeemed_coupons
            or self.applied_coupons
        )

    def merge(self, other: "ChangeSet") -> None:
        """Fold another change set into this one (at most one order overall)."""
        if self.order is not None and other.order is not None:
            raise ValueError("A change set can carry at most one order")
        self.order = self.order or other.order
        self.claim_item_ids.extend(other.claim_item_ids)
        self.new_items.extend(other.new_items)
        self.updated_items.extend(other.updated_items)
        self.deleted_item_ids.extend(other.deleted_item_ids)
        self.owners.extend(other.owners)
        self.subscriptions.extend(other.subscriptions)
        self.redeemed_coupons.extend(other.redeemed_coupons)
        self.applied_coupons.extend(other.applied_coupons)
        self.redemption_limits.update(other.redemption_limits)

    def unique_subscriptions(self) -> list[Subscription]:
        """Subscriptions to write, one per id, the last one listed winning."""
        return list({s.id: s for s in self.subscriptions}.values())


@dataclass(frozen=True)
class BillingConfig:
    """Explicit billing configuration handed to the services that need it."""

    currency: str = "EUR"
    currency_locale: str = "de_DE"
    first_payment_amount: int = 5  # requested when the first charge is zero
    first_payment_description: str = "First payment"
    first_payment_webhook_url: str = "mandate-webhook"
    webhook_url: str = "webhook"

    def __post_init__(self) -> None:
        object.__setattr__(self, "currency", self.currency.upper())
        if self.first_payment_amount < 1:
            raise ValueError(
                f"first_payment_amount must be positive, got {self.first_payment_amount}"
            )


@dataclass(frozen=True)
class RunResult:
    """Summary of one billing run."""

    owners_processed: int
    orders_created: int
    items_processed: int
    items_scheduled: int
    timestamp: datetime
    owners_failed: int = 0
