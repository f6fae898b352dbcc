"""Fake MandateProviderPort implementation for testing."""

from cadence.core.models import Owner
from cadence.core.ports import MandateProviderPort


class FakeMandateProvider(MandateProviderPort):
    """Reports the mandates listed in ``valid_mandates`` as valid."""

    def __init__(self, valid_mandates: set[str] | None = None):
        self.valid_mandates = set(valid_mandates or ())
        self.checked_owners: list[str] = []
        self.should_fail = False

    def set_should_fail(self, should_fail: bool) -> None:
        self.should_fail = should_fail

    async def is_mandate_valid(self, owner: Owner) -> bool:
        self.checked_owners.append(owner.id)
        if self.should_fail:
            raise ConnectionError("Payment provider unreachable")
        return owner.mandate_id is not None and owner.mandate_id in self.valid_mandates
