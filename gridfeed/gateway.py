"""
GridFeed — Function gateway client
Invokes a named serverless function with a JSON body and returns its JSON
reply, in the request/response shape the poller consumes.

Contract
--------
  invoke(function_name, {"action": ..., **params})
      -> GatewayResult(data={...}, error=None)         on 2xx with JSON body
      -> GatewayResult(data=None, error=GatewayError)  on any transport error

The gateway never retries; retry policy belongs to the caller.

HTTP mapping (HttpGateway)
--------------------------
  POST {base_url}/functions/v1/{function_name}
  Headers: Authorization: Bearer <key>, apikey: <key>  (when a key is set)
  429, 5xx, timeouts and connection errors are flagged ``retryable``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from loguru import logger

from gridfeed.config import DEFAULT_REQUEST_TIMEOUT_SECONDS, Settings

FUNCTIONS_PATH = "/functions/v1"


@dataclass(frozen=True)
class GatewayError:
    message:     str
    status_code: Optional[int] = None
    retryable:   bool = False


@dataclass(frozen=True)
class GatewayResult:
    data:  Optional[dict[str, Any]] = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteGateway(Protocol):
    """Anything that can invoke a named function with a JSON body."""

    async def invoke(self, function_name: str, body: dict[str, Any]) -> GatewayResult:
        ...


class HttpGateway:
    """
    Async HTTP client for a function gateway.

    Parameters
    ----------
    base_url:
        Gateway origin, e.g. ``https://<project>.example.co``.
    api_key:
        Optional credential sent as both bearer token and ``apikey`` header.
    timeout:
        Per-request timeout in seconds.
    client:
        Optional pre-built ``httpx.AsyncClient``.  When supplied the caller
        owns its lifecycle and ``aclose()`` leaves it open.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpGateway":
        return cls(settings.gateway_url, settings.gateway_key, settings.request_timeout)

    async def __aenter__(self) -> "HttpGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
            logger.debug("Gateway httpx client closed.")

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
            headers["apikey"] = self._api_key
        return headers

    def function_url(self, function_name: str) -> str:
        return f"{self.base_url}{FUNCTIONS_PATH}/{function_name}"

    async def invoke(self, function_name: str, body: dict[str, Any]) -> GatewayResult:
        """POST *body* to the named function.  Transport errors are returned, not raised."""
        url = self.function_url(function_name)
        logger.debug("Gateway POST {} body={}", url, body)
        try:
            resp = await self._client.post(url, json=body, headers=self._headers())
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as exc:
            logger.warning("Gateway {} timed out: {}", function_name, exc)
            return GatewayResult(error=GatewayError(f"Gateway timed out: {exc}", retryable=True))
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            logger.warning("Gateway {} returned {}.", function_name, code)
            return GatewayResult(
                error=GatewayError(
                    f"Gateway error {code}",
                    status_code=code,
                    retryable=code == 429 or code >= 500,
                )
            )
        except httpx.RequestError as exc:
            logger.warning("Gateway {} unreachable: {}", function_name, exc)
            return GatewayResult(error=GatewayError(f"Gateway unreachable: {exc}", retryable=True))
        except ValueError as exc:
            logger.warning("Gateway {} returned invalid JSON: {}", function_name, exc)
            return GatewayResult(error=GatewayError(f"Invalid JSON from gateway: {exc}"))

        if not isinstance(data, dict):
            return GatewayResult(error=GatewayError("Gateway body is not a JSON object"))
        return GatewayResult(data=data)
