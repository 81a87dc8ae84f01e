"""
Shared fixtures: an in-memory function gateway and a manually advanced clock.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Union

import pytest

from gridfeed.gateway import GatewayError, GatewayResult
from gridfeed.models import DataType
from gridfeed.notices import Notice

LIVE_TIMESTAMP = "2026-01-15T17:00:00+00:00"

SAMPLE_PAYLOADS: dict[DataType, dict[str, Any]] = {
    DataType.PRICE: {
        "current_price": 52.41,
        "average_price": 48.10,
        "peak_price": 91.20,
        "off_peak_price": 22.75,
        "cents_per_kwh": 5.24,
        "market_conditions": "normal",
        "timestamp": LIVE_TIMESTAMP,
    },
    DataType.LOAD_FORECAST: {
        "current_demand_mw": 10120.0,
        "peak_forecast_mw": 11450.0,
        "forecast_date": LIVE_TIMESTAMP,
        "capacity_margin": 15.2,
        "reserve_margin": 18.7,
    },
    DataType.GENERATION: {
        "natural_gas_mw": 4300.0,
        "wind_mw": 2900.0,
        "solar_mw": 480.0,
        "hydro_mw": 1500.0,
        "coal_mw": 700.0,
        "other_mw": 120.0,
        "total_generation_mw": 10000.0,
        "renewable_percentage": 48.8,
        "timestamp": LIVE_TIMESTAMP,
    },
}

_BY_ACTION = {dt.action: dt for dt in DataType}

Outcome = Union[GatewayResult, BaseException]


def live_body(data_type: DataType, **overrides: Any) -> dict[str, Any]:
    """A successful gateway reply for *data_type*."""
    body = {
        "success": True,
        "source": "aeso_api",
        "data": dict(SAMPLE_PAYLOADS[data_type]),
        "timestamp": LIVE_TIMESTAMP,
    }
    body.update(overrides)
    return body


def failed(message: str = "rate limited", retryable: bool = False, status_code: Optional[int] = None) -> GatewayResult:
    return GatewayResult(error=GatewayError(message, status_code=status_code, retryable=retryable))


class FakeGateway:
    """
    Records every invocation and replies from per-action queues.

    With an empty queue the ``default`` outcome is used; a ``None`` default
    means a live reply for the requested action.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.queues: dict[str, list[Outcome]] = {}
        self.default: Optional[Outcome] = None
        self.delay = delay

    def queue(self, data_type: DataType, *outcomes: Outcome) -> None:
        self.queues.setdefault(data_type.action, []).extend(outcomes)

    def calls_for(self, data_type: DataType) -> list[dict[str, Any]]:
        return [body for _, body in self.calls if body.get("action") == data_type.action]

    async def invoke(self, function_name: str, body: dict[str, Any]) -> GatewayResult:
        self.calls.append((function_name, dict(body)))
        await asyncio.sleep(self.delay)

        pending = self.queues.get(body["action"])
        outcome = pending.pop(0) if pending else self.default
        if outcome is None:
            return GatewayResult(data=live_body(_BY_ACTION[body["action"]]))
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notices() -> list[Notice]:
    return []
