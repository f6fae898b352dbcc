"""Fake implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without external dependencies:

- FakeBillingStore: In-memory billing records with atomic apply()
- FakeClock: Settable "now"
- FakeMandateProvider: Configurable mandate validity
- FakePlanCatalog / FakeCouponCatalog: In-memory catalogs
- RecordingEventSink: Captured events for assertion
- FakeBillingRun: Canned billing run results
"""

from .billing_run import FakeBillingRun
from .catalog import MONTHLY, WEEKLY_USD, YEARLY, FakeCouponCatalog, FakePlanCatalog
from .clock import DEFAULT_NOW, FakeClock
from .events import RecordingEventSink
from .mandates import FakeMandateProvider
from .store import FakeBillingStore

__all__ = [
    "DEFAULT_NOW",
    "MONTHLY",
    "WEEKLY_USD",
    "YEARLY",
    "FakeBillingRun",
    "FakeBillingStore",
    "FakeClock",
    "FakeCouponCatalog",
    "FakeMandateProvider",
    "FakePlanCatalog",
    "RecordingEventSink",
]
