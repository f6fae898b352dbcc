"""Fake BillingRunPort implementation for testing."""

from datetime import datetime, timezone

from cadence.core.models import RunResult
from cadence.core.ports import BillingRunPort


class FakeBillingRun(BillingRunPort):
    """Returns a canned RunResult and counts invocations."""

    def __init__(self, result: RunResult | None = None):
        self.result = result or RunResult(
            owners_processed=0,
            orders_created=0,
            items_processed=0,
            items_scheduled=0,
            timestamp=datetime.now(timezone.utc),
        )
        self.run_count = 0
        self.should_fail = False

    def set_should_fail(self, should_fail: bool) -> None:
        self.should_fail = should_fail

    async def run(self) -> RunResult:
        self.run_count += 1
        if self.should_fail:
            raise RuntimeError("Billing run failed")
        return self.result
