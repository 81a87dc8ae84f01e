"""
HttpGateway against an in-process httpx.MockTransport.
"""

from __future__ import annotations

import json

import httpx
import pytest

from gridfeed.config import Settings
from gridfeed.gateway import HttpGateway

BASE_URL = "https://feeds.example.test"


def _gateway(handler, api_key: str = "secret") -> HttpGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpGateway(BASE_URL + "/", api_key=api_key, client=client)


async def test_success_posts_action_to_function_url():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"current_price": 50}})

    gw = _gateway(handler)
    result = await gw.invoke("aeso-data-integration", {"action": "fetch_current_prices"})

    assert result.ok
    assert result.data["data"]["current_price"] == 50
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/functions/v1/aeso-data-integration"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["apikey"] == "secret"
    assert json.loads(request.content) == {"action": "fetch_current_prices"}


async def test_no_auth_headers_without_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    await _gateway(handler, api_key="").invoke("fn", {"action": "x"})

    assert "Authorization" not in seen[0].headers
    assert "apikey" not in seen[0].headers


@pytest.mark.parametrize(
    "status, retryable",
    [(429, True), (500, True), (503, True), (400, False), (401, False), (404, False)],
)
async def test_http_errors_are_returned_with_retry_hint(status, retryable):
    gw = _gateway(lambda request: httpx.Response(status, json={"error": "nope"}))

    result = await gw.invoke("fn", {"action": "x"})

    assert not result.ok
    assert result.data is None
    assert result.error.status_code == status
    assert result.error.retryable is retryable
    assert str(status) in result.error.message


@pytest.mark.parametrize("exc", [httpx.ReadTimeout, httpx.ConnectError])
async def test_transport_errors_are_retryable(exc):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc("boom", request=request)

    result = await _gateway(handler).invoke("fn", {"action": "x"})

    assert not result.ok
    assert result.error.retryable
    assert result.error.status_code is None


async def test_invalid_json_is_an_error():
    gw = _gateway(lambda request: httpx.Response(200, content=b"<html>oops</html>"))

    result = await gw.invoke("fn", {"action": "x"})

    assert not result.ok
    assert not result.error.retryable
    assert "Invalid JSON" in result.error.message


async def test_non_object_json_is_an_error():
    gw = _gateway(lambda request: httpx.Response(200, json=[1, 2, 3]))

    result = await gw.invoke("fn", {"action": "x"})

    assert not result.ok
    assert "not a JSON object" in result.error.message


async def test_injected_client_is_left_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
    async with HttpGateway(BASE_URL, client=client):
        pass

    assert not client.is_closed
    await client.aclose()


async def test_owned_client_is_closed():
    gw = HttpGateway(BASE_URL)
    await gw.aclose()
    assert gw._client.is_closed


def test_from_settings():
    settings = Settings(gateway_url="http://gw.local:54321/", gateway_key="k", request_timeout=3.0)
    gw = HttpGateway.from_settings(settings)

    assert gw.base_url == "http://gw.local:54321"
    assert gw.function_url("feed") == "http://gw.local:54321/functions/v1/feed"
    assert gw._client.timeout.read == 3.0
