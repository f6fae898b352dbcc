"""Typed failures raised by the billing core.

Each failure is recovered at an action boundary (starting a subscription,
swapping, redeeming a coupon) or at the per-owner boundary of a billing run,
never turned into a generic fault.
"""


class BillingError(Exception):
    """Base class for all billing failures."""


class OwnerNotFound(BillingError):
    """No owner exists with the requested id."""


class SubscriptionNotFound(BillingError):
    """The owner holds no subscription with the requested name."""


class PlanNotFound(BillingError):
    """The plan catalog has no entry for the requested plan name."""


class InvalidMandate(BillingError):
    """The owner has no valid payment mandate.

    Routes subscription creation through the first-payment path.
    """


class CouponError(BillingError):
    """Base class for coupon redemption failures."""


class CouponNotFound(CouponError):
    """The coupon catalog has no redeemable coupon with this name."""


class CouponExpired(CouponNotFound):
    """The coupon exists but can no longer be redeemed."""


class CouponLimitReached(CouponError):
    """The coupon hit its redemption limit, globally or for this owner."""


class InvalidCyclePayload(BillingError):
    """A stored action payload cannot be turned back into an action."""


class InvalidTransition(BillingError, ValueError):
    """A subscription or coupon state change is not allowed from its current state."""


class ConcurrentProcessingConflict(BillingError):
    """Another pass claimed or changed the same records first.

    The unit of work was rolled back; callers may retry on a later pass.
    """


class DuplicateCouponApplication(BillingError):
    """A redeemed coupon was already applied to this billing cycle."""


class CurrencyMismatch(InvalidTransition):
    """A plan is priced in a currency other than the owner's billing currency."""
