"""Reconstructable subscription actions.

An action is prepared now and may be executed later, e.g. once a first
payment has been paid. Its payload is a tagged, versioned mapping:
``handler`` selects the action class and ``version`` the payload layout.
Rebuilding an action from its payload and asking for the payload again
yields the same mapping.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from . import money
from .cycles import SubscriptionCycleManager, check_currency
from .errors import CurrencyMismatch, InvalidCyclePayload, PlanNotFound
from .events import SubscriptionStarted
from .models import ChangeSet, OrderItemCollection, Owner, Plan, Subscription
from .money import Money

logger = logging.getLogger(__name__)

START_SUBSCRIPTION = "start_subscription"
PAYLOAD_VERSION = 1

_REQUIRED_FIELDS = frozenset(
    {"handler", "version", "description", "subtotal", "tax_percentage", "plan", "name", "quantity"}
)
_OPTIONAL_FIELDS = frozenset({"trial_days", "trial_until", "skip_trial", "coupon"})


@dataclass(frozen=True)
class StartSubscriptionPayload:
    """Validated contents of a ``start_subscription`` payload."""

    plan: str
    name: str
    quantity: int
    subtotal: Money
    tax_percentage: Decimal
    description: str = ""
    trial_days: int | None = None
    trial_until: datetime | None = None
    skip_trial: bool = False
    coupon: str | None = None

    def __post_init__(self) -> None:
        if not self.plan or not self.name:
            raise ValueError("plan and name must be non-empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"quantity must be an integer, got {self.quantity!r}")
        if self.quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {self.quantity}")
        if self.tax_percentage < 0:
            raise ValueError(f"tax_percentage must be non-negative, got {self.tax_percentage}")
        trial_options = [
            self.trial_days is not None,
            self.trial_until is not None,
            self.skip_trial,
        ]
        if sum(trial_options) > 1:
            raise ValueError("trial_days, trial_until and skip_trial are mutually exclusive")
        if self.trial_days is not None and self.trial_days < 1:
            raise ValueError(f"trial_days must be >= 1, got {self.trial_days}")
        if self.trial_until is not None and self.trial_until.tzinfo is None:
            raise ValueError("trial_until must be timezone-aware")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StartSubscriptionPayload":
        """Parse a stored payload.

        Raises:
            InvalidCyclePayload: For an unknown handler or version, missing or
                unexpected fields, or values that do not validate.
        """
        if payload.get("handler") != START_SUBSCRIPTION:
            raise InvalidCyclePayload(f"Unknown action handler: {payload.get('handler')!r}")
        if payload.get("version") != PAYLOAD_VERSION:
            raise InvalidCyclePayload(f"Unsupported payload version: {payload.get('version')!r}")
        missing = _REQUIRED_FIELDS - payload.keys()
        if missing:
            raise InvalidCyclePayload(f"Payload is missing fields: {sorted(missing)}")
        unexpected = payload.keys() - _REQUIRED_FIELDS - _OPTIONAL_FIELDS
        if unexpected:
            raise InvalidCyclePayload(f"Payload has unexpected fields: {sorted(unexpected)}")

        try:
            trial_until = payload.get("trial_until")
            return cls(
                plan=str(payload["plan"]),
                name=str(payload["name"]),
                quantity=payload["quantity"],
                subtotal=Money.from_payload(payload["subtotal"]),
                tax_percentage=money.to_decimal(str(payload["tax_percentage"])),
                description=str(payload["description"]),
                trial_days=payload.get("trial_days"),
                trial_until=(
                    datetime.fromisoformat(trial_until) if trial_until is not None else None
                ),
                skip_trial=bool(payload.get("skip_trial", False)),
                coupon=payload.get("coupon"),
            )
        except (TypeError, ValueError, InvalidOperation) as e:
            raise InvalidCyclePayload(f"Invalid start_subscription payload: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "handler": START_SUBSCRIPTION,
            "version": PAYLOAD_VERSION,
            "description": self.description,
            "subtotal": self.subtotal.to_payload(),
            "tax_percentage": str(self.tax_percentage),
            "plan": self.plan,
            "name": self.name,
            "quantity": self.quantity,
        }
        if self.trial_days is not None:
            payload["trial_days"] = self.trial_days
        if self.trial_until is not None:
            payload["trial_until"] = self.trial_until.isoformat()
        if self.skip_trial:
            payload["skip_trial"] = True
        if self.coupon is not None:
            payload["coupon"] = self.coupon
        return payload


class StartSubscription:
    """Starts a named subscription on a plan for an owner.

    Configure with the chainable trial/quantity/coupon methods, then either
    ``execute()`` it or hand ``get_payload()`` to a first payment. The last
    trial option set wins.
    """

    handler = START_SUBSCRIPTION

    def __init__(
        self,
        owner: Owner,
        name: str,
        plan: Plan,
        cycles: SubscriptionCycleManager,
        tax_percentage: Decimal | None = None,
    ):
        check_currency(owner, plan)
        self.owner = owner
        self.name = name
        self.plan = plan
        self.cycles = cycles
        self.tax_percentage = (
            owner.tax_percentage if tax_percentage is None else money.to_decimal(tax_percentage)
        )
        self.subscription: Subscription | None = None
        self._quantity = 1
        self._trial_days: int | None = None
        self._trial_until: datetime | None = None
        self._skip_trial = False
        self._coupon: str | None = None

    def trial_days(self, days: int) -> "StartSubscription":
        if days < 1:
            raise ValueError(f"trial days must be >= 1, got {days}")
        self._trial_days, self._trial_until, self._skip_trial = days, None, False
        return self

    def trial_until(self, until: datetime) -> "StartSubscription":
        if until.tzinfo is None:
            raise ValueError("trial end must be timezone-aware")
        self._trial_days, self._trial_until, self._skip_trial = None, until, False
        return self

    def skip_trial(self) -> "StartSubscription":
        """Charge immediately, even if the owner has a generic trial."""
        self._trial_days, self._trial_until, self._skip_trial = None, None, True
        return self

    def quantity(self, quantity: int) -> "StartSubscription":
        if quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {quantity}")
        self._quantity = quantity
        return self

    def with_coupon(self, coupon_name: str) -> "StartSubscription":
        self._coupon = coupon_name
        return self

    def has_trial_option(self) -> bool:
        return self._trial_days is not None or self._trial_until is not None or self._skip_trial

    def is_trial(self) -> bool:
        return self._trial_days is not None or self._trial_until is not None

    def trial_ends_at(self, now: datetime) -> datetime | None:
        if self._trial_days is not None:
            return now + timedelta(days=self._trial_days)
        return self._trial_until

    def subtotal(self) -> Money:
        """Charge due now, tax excluded: zero on trial."""
        if self.is_trial():
            return Money(0, self.plan.currency)
        return Money(money.subtotal(self.plan.amount, self._quantity), self.plan.currency)

    def total(self) -> Money:
        """Charge due now after any coupon discount, tax included."""
        amount = self.subtotal().amount
        if amount > 0 and self._coupon is not None:
            coupon = self.cycles.coupons.catalog.find(self._coupon)
            amount -= coupon.discount_for(amount)
        return Money(amount + money.tax(amount, self.tax_percentage), self.plan.currency)

    def get_payload(self) -> dict[str, Any]:
        return StartSubscriptionPayload(
            plan=self.plan.name,
            name=self.name,
            quantity=self._quantity,
            subtotal=self.subtotal(),
            tax_percentage=self.tax_percentage,
            description=self.plan.description,
            trial_days=self._trial_days,
            trial_until=self._trial_until,
            skip_trial=self._skip_trial,
            coupon=self._coupon,
        ).to_dict()

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        owner: Owner,
        cycles: SubscriptionCycleManager,
    ) -> "StartSubscription":
        """Rebuild an action from a stored payload.

        Raises:
            InvalidCyclePayload: If the payload does not validate or names an
                unknown plan or one priced in another currency.
        """
        data = StartSubscriptionPayload.from_dict(payload)
        try:
            plan = cycles.plans.find(data.plan)
        except PlanNotFound as e:
            raise InvalidCyclePayload(f"Payload names unknown plan {data.plan!r}") from e

        try:
            action = cls(owner, data.name, plan, cycles, tax_percentage=data.tax_percentage)
        except CurrencyMismatch as e:
            raise InvalidCyclePayload(str(e)) from e
        action._quantity = data.quantity
        action._trial_days = data.trial_days
        action._trial_until = data.trial_until
        action._skip_trial = data.skip_trial
        action._coupon = data.coupon
        return action

    async def prepare(self, changes: ChangeSet) -> OrderItemCollection:
        """Build the subscription and its items into ``changes`` without committing."""
        subscription, items = await self.cycles.prepare_start(
            self.owner,
            self.name,
            self.plan,
            self._quantity,
            changes,
            trial_ends_at=self.trial_ends_at(self.cycles.clock.now()),
            tax_percentage=self.tax_percentage,
            coupon_name=self._coupon,
        )
        self.subscription = subscription
        return items

    async def execute(self) -> OrderItemCollection:
        """Start the subscription and persist it.

        Returns:
            The items due now, start charge first. The scheduled next-cycle
            item is persisted too but not returned.
        """
        changes = ChangeSet()
        items = await self.prepare(changes)
        await self.cycles.store.apply(changes)
        logger.info(
            f"Started subscription {self.name!r} on plan {self.plan.name} for owner {self.owner.id}",
            extra={"owner_id": self.owner.id, "subscription_id": self.subscription.id},
        )
        await self.cycles.events.dispatch(
            SubscriptionStarted(occurred_at=self.cycles.clock.now(), subscription=self.subscription)
        )
        return items


ACTION_HANDLERS: dict[str, type[StartSubscription]] = {
    StartSubscription.handler: StartSubscription,
}


def action_from_payload(
    payload: Mapping[str, Any],
    owner: Owner,
    cycles: SubscriptionCycleManager,
) -> StartSubscription:
    """Rebuild whichever action the payload's ``handler`` names."""
    handler = payload.get("handler")
    action_class = ACTION_HANDLERS.get(handler) if isinstance(handler, str) else None
    if action_class is None:
        raise InvalidCyclePayload(f"Unknown action handler: {handler!r}")
    return action_class.from_payload(payload, owner, cycles)
