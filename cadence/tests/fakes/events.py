"""Fake EventSinkPort implementation for testing."""

from cadence.core.events import BillingEvent
from cadence.core.ports import EventSinkPort


class RecordingEventSink(EventSinkPort):
    """Captures dispatched events for assertion."""

    def __init__(self):
        self.events: list[BillingEvent] = []
        self.should_fail = False

    def set_should_fail(self, should_fail: bool) -> None:
        self.should_fail = should_fail

    async def dispatch(self, event: BillingEvent) -> None:
        if self.should_fail:
            raise RuntimeError("Event sink unavailable")
        self.events.append(event)

    def of_type(self, event_type: type[BillingEvent]) -> list[BillingEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def reset(self) -> None:
        self.events.clear()
        self.should_fail = False
