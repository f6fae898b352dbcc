"""Tests for the HTTP mandate provider using a stubbed transport."""

import httpx
import pytest

from cadence.adapters.mandates.http import HttpMandateProvider, NoMandateProvider
from cadence.core.models import Owner


def _provider(handler, api_key: str = "test_key") -> HttpMandateProvider:
    return HttpMandateProvider(
        api_url="https://api.example.com/v2/",
        api_key=api_key,
        transport=httpx.MockTransport(handler),
    )


def _status_handler(status: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"resource": "mandate", "status": status})

    return handler


@pytest.fixture
def owner() -> Owner:
    return Owner(id="owner-1", mandate_id="mdt_1", customer_id="cst_1")


class TestHttpMandateProvider:
    def test_headers(self):
        provider = _provider(_status_handler("valid"))

        assert provider.api_url == "https://api.example.com/v2"
        assert provider._get_headers()["Authorization"] == "Bearer test_key"
        assert "Authorization" not in _provider(_status_handler("valid"), api_key="")._get_headers()

    @pytest.mark.asyncio
    async def test_requests_customer_mandate(self, owner):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "valid"})

        async with _provider(handler) as provider:
            assert await provider.is_mandate_valid(owner)

        (request,) = seen
        assert request.url.path == "/v2/customers/cst_1/mandates/mdt_1"
        assert request.headers["Authorization"] == "Bearer test_key"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "expected"),
        [("valid", True), ("pending", True), ("invalid", False), ("", False)],
    )
    async def test_mandate_status(self, owner, status, expected):
        provider = _provider(_status_handler(status))
        try:
            assert await provider.is_mandate_valid(owner) is expected
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_unknown_mandate_is_invalid(self, owner):
        provider = _provider(lambda request: httpx.Response(404, json={"status": 404}))
        try:
            assert not await provider.is_mandate_valid(owner)
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_server_error_propagates(self, owner):
        provider = _provider(lambda request: httpx.Response(500))
        try:
            with pytest.raises(httpx.HTTPStatusError):
                await provider.is_mandate_valid(owner)
        finally:
            await provider.close()

    @pytest.mark.asyncio
    async def test_connection_error_propagates(self, owner):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(handler)
        try:
            with pytest.raises(httpx.ConnectError):
                await provider.is_mandate_valid(owner)
        finally:
            await provider.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "owner",
        [Owner(id="owner-1"), Owner(id="owner-1", mandate_id="mdt_1")],
    )
    async def test_owner_without_references_is_not_looked_up(self, owner):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        provider = _provider(handler)
        try:
            assert not await provider.is_mandate_valid(owner)
        finally:
            await provider.close()


@pytest.mark.asyncio
async def test_no_mandate_provider_rejects_everything(owner):
    assert not await NoMandateProvider().is_mandate_valid(owner)
