"""Subscription builders.

``new_subscription()`` picks the variant once, from the owner's mandate:
an owner with a valid mandate is charged directly, anyone else goes
through a first payment.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .actions import StartSubscription
from .cycles import SubscriptionCycleManager
from .errors import InvalidMandate
from .first_payment import FirstPayment
from .models import BillingConfig, Owner, Subscription
from .money import Money
from .ports import MandateProviderPort


class SubscriptionBuilder(ABC):
    """Common configuration surface of both builder variants."""

    def __init__(
        self,
        owner: Owner,
        name: str,
        plan_name: str,
        cycles: SubscriptionCycleManager,
    ):
        self.owner = owner
        self.cycles = cycles
        self.action = StartSubscription(owner, name, cycles.plans.find(plan_name), cycles)

    def trial_days(self, days: int) -> "SubscriptionBuilder":
        self.action.trial_days(days)
        return self

    def trial_until(self, until: datetime) -> "SubscriptionBuilder":
        self.action.trial_until(until)
        return self

    def skip_trial(self) -> "SubscriptionBuilder":
        self.action.skip_trial()
        return self

    def quantity(self, quantity: int) -> "SubscriptionBuilder":
        self.action.quantity(quantity)
        return self

    def with_coupon(self, coupon_name: str) -> "SubscriptionBuilder":
        self.action.with_coupon(coupon_name)
        return self

    def _apply_generic_trial(self) -> None:
        """Fall back to the owner's generic trial when no trial option was chosen."""
        now = self.cycles.clock.now()
        if not self.action.has_trial_option() and self.owner.on_generic_trial(now):
            self.action.trial_until(self.owner.trial_ends_at)

    @abstractmethod
    async def create(self) -> Subscription | FirstPayment:
        """Create the subscription, or the first payment that will create it."""


class MandatedSubscriptionBuilder(SubscriptionBuilder):
    """Starts the subscription right away against the owner's mandate."""

    def __init__(
        self,
        owner: Owner,
        name: str,
        plan_name: str,
        cycles: SubscriptionCycleManager,
        mandates: MandateProviderPort,
    ):
        super().__init__(owner, name, plan_name, cycles)
        self.mandates = mandates

    async def create(self) -> Subscription:
        """Start the subscription.

        Raises:
            InvalidMandate: If the mandate stopped being valid since the
                builder was chosen.
        """
        if not await self.mandates.is_mandate_valid(self.owner):
            raise InvalidMandate(f"Owner {self.owner.id} has no valid mandate")
        self._apply_generic_trial()
        await self.action.execute()
        return self.action.subscription


class FirstPaymentSubscriptionBuilder(SubscriptionBuilder):
    """Defers the subscription until a first payment sets up a mandate."""

    def __init__(
        self,
        owner: Owner,
        name: str,
        plan_name: str,
        cycles: SubscriptionCycleManager,
        config: BillingConfig,
    ):
        super().__init__(owner, name, plan_name, cycles)
        self.config = config

    async def create(self) -> FirstPayment:
        """Build the first payment request; no subscription state changes.

        A zero first charge (trial) still requests the configured minimum
        amount so the payment can establish a mandate.
        """
        self._apply_generic_trial()
        total = self.action.total()
        amount = total if total.amount > 0 else Money(self.config.first_payment_amount, total.currency)
        description = self.action.plan.description or self.config.first_payment_description
        return FirstPayment(
            owner_id=self.owner.id,
            description=description,
            amount=amount,
            actions=(self.action.get_payload(),),
            webhook_url=self.config.first_payment_webhook_url,
        )


async def new_subscription(
    owner: Owner,
    name: str,
    plan_name: str,
    cycles: SubscriptionCycleManager,
    mandates: MandateProviderPort,
    config: BillingConfig,
) -> SubscriptionBuilder:
    """Choose the builder variant for an owner.

    No mandate, or one the provider reports invalid, selects the
    first-payment variant; a valid mandate selects the direct variant.

    Raises:
        PlanNotFound: If the plan is unknown.
        CurrencyMismatch: If the plan is not priced in the owner's currency.
    """
    if owner.mandate_id is not None and await mandates.is_mandate_valid(owner):
        return MandatedSubscriptionBuilder(owner, name, plan_name, cycles, mandates)
    return FirstPaymentSubscriptionBuilder(owner, name, plan_name, cycles, config)
