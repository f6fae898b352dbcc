"""HTTP mandate provider adapter.

Implements MandateProviderPort against a Mollie-style REST API. A mandate
counts as usable while the provider reports it ``valid`` or ``pending``.
"""

import logging

import httpx

from cadence.core.models import Owner
from cadence.core.ports import MandateProviderPort

logger = logging.getLogger(__name__)

USABLE_MANDATE_STATUSES = frozenset({"valid", "pending"})


class HttpMandateProvider(MandateProviderPort):
    """Mandate provider backed by the payment provider's REST API."""

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider client.

        Args:
            api_url: Base URL of the provider API (e.g. https://api.mollie.com/v2).
            api_key: API key sent as a bearer token.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, used to stub the API.
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            base_url=self.api_url,
            headers=self._get_headers(),
            timeout=timeout,
            transport=transport,
        )

    def _get_headers(self) -> dict[str, str]:
        """Build request headers."""
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def __aenter__(self) -> "HttpMandateProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.client.aclose()

    async def close(self) -> None:
        """Close the httpx client and clean up resources."""
        await self.client.aclose()

    async def is_mandate_valid(self, owner: Owner) -> bool:
        if not owner.mandate_id or not owner.customer_id:
            return False

        try:
            response = await self.client.get(
                f"/customers/{owner.customer_id}/mandates/{owner.mandate_id}"
            )
            if response.status_code == 404:
                logger.info(
                    f"Mandate {owner.mandate_id} not found for owner {owner.id}",
                    extra={"owner_id": owner.id, "mandate_id": owner.mandate_id},
                )
                return False
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to check mandate for owner {owner.id}: {e}")
            raise

        status = response.json().get("status", "")
        valid = status in USABLE_MANDATE_STATUSES
        logger.debug(
            f"Mandate {owner.mandate_id} for owner {owner.id} is {status or 'unknown'}",
            extra={"owner_id": owner.id, "mandate_status": status},
        )
        return valid


class NoMandateProvider(MandateProviderPort):
    """Treats every mandate as unusable, so subscriptions start via first payment."""

    async def is_mandate_valid(self, owner: Owner) -> bool:
        return False
