"""
FastAPI endpoints, backed by an in-memory gateway.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api import app
from conftest import FakeGateway, SAMPLE_PAYLOADS, failed, live_body
from gridfeed.gateway import GatewayResult
from gridfeed.models import DataType


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def client(fake_gateway):
    app.state.gateway = fake_gateway
    app.state.autostart = False
    try:
        with TestClient(app) as c:
            yield c
    finally:
        del app.state.gateway
        del app.state.autostart


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["connection_status"] == "connecting"


def test_market_price_live(client, fake_gateway):
    r = client.get("/market/price")
    assert r.status_code == 200
    body = r.json()

    assert body["meta"]["source"] == "live"
    assert body["meta"]["is_simulated"] is False
    assert body["meta"]["connection_status"] == "connected"
    assert body["data"]["current_price"] == SAMPLE_PAYLOADS[DataType.PRICE]["current_price"]
    assert len(fake_gateway.calls) == 1


def test_market_second_read_uses_current_value(client, fake_gateway):
    client.get("/market/load_forecast")
    r = client.get("/market/load_forecast")

    assert r.status_code == 200
    assert len(fake_gateway.calls) == 1


def test_market_type_is_case_insensitive(client):
    assert client.get("/market/GENERATION").status_code == 200


def test_unknown_market_type_is_404(client, fake_gateway):
    r = client.get("/market/bogus")
    assert r.status_code == 404
    assert "bogus" in r.json()["detail"]
    assert fake_gateway.calls == []


def test_gateway_failure_serves_simulated_data(client, fake_gateway):
    fake_gateway.default = failed("rate limited", status_code=429)

    r = client.get("/market/price")
    assert r.status_code == 200
    meta = r.json()["meta"]

    assert meta["source"] == "fallback"
    assert meta["is_simulated"] is True
    assert meta["connection_status"] == "fallback"
    assert meta["error"] == "rate limited"
    assert r.json()["data"]["current_price"] >= 20


def test_status_before_and_after_refresh(client):
    before = client.get("/status").json()
    assert before["connection_status"] == "connecting"
    assert before["polling"] is False
    assert all(entry["source"] is None for entry in before["data_types"])

    r = client.post("/refresh")
    assert r.status_code == 200
    assert {item["meta"]["data_type"] for item in r.json()} == {"price", "load_forecast", "generation"}

    after = client.get("/status").json()
    assert after["connection_status"] == "connected"
    assert after["consecutive_failures"] == 0
    assert {entry["source"] for entry in after["data_types"]} == {"live"}


def test_analytics(client):
    r = client.get("/analytics")
    assert r.status_code == 200
    body = r.json()

    assert body["is_simulated"] is False
    analytics = body["analytics"]
    assert 0 <= analytics["market_stress_score"] <= 100
    assert analytics["capacity_gap"]["current_gap_mw"] == 11450 - 10120
    assert isinstance(body["alerts"], list)


def test_price_stats_use_live_prices_only(client, fake_gateway):
    for _ in range(3):
        client.post("/refresh")

    r = client.get("/market/price/stats", params={"threshold": 3})
    assert r.status_code == 200
    body = r.json()

    # First refresh is live, later ones are served from cache and skipped.
    assert body["prices"] == [52.41]
    assert body["cached_points"] == 2
    assert body["simulated_points"] == 0
    assert body["statistics"]["total_records"] == 1
    assert body["statistics"]["price_volatility"] == 0
    assert body["anomalies"] == [False]
    assert body["threshold"] == 3
    assert body["alerts"] == []


def test_price_stats_skip_simulated_values(client, fake_gateway):
    fake_gateway.default = failed("down")
    for _ in range(2):
        client.post("/refresh")

    body = client.get("/market/price/stats").json()

    assert body["prices"] == []
    assert body["statistics"] is None
    assert body["simulated_points"] == 2


def test_price_stats_empty_history(client):
    body = client.get("/market/price/stats").json()
    assert body["statistics"] is None
    assert body["prices"] == []


def test_price_stats_threshold_is_validated(client):
    assert client.get("/market/price/stats", params={"threshold": 0}).status_code == 422


def _queue_stressed_market(gateway: FakeGateway) -> None:
    price = {**SAMPLE_PAYLOADS[DataType.PRICE], "current_price": 250.0}
    load = {
        **SAMPLE_PAYLOADS[DataType.LOAD_FORECAST],
        "current_demand_mw": 10900.0,
        "peak_forecast_mw": 11200.0,
        "reserve_margin": 5.0,
    }
    gateway.queue(DataType.PRICE, GatewayResult(data=live_body(DataType.PRICE, data=price)))
    gateway.queue(DataType.LOAD_FORECAST, GatewayResult(data=live_body(DataType.LOAD_FORECAST, data=load)))


def test_alerts_accumulate_and_can_be_dismissed(client, fake_gateway):
    _queue_stressed_market(fake_gateway)
    assert client.get("/alerts").json() == {"count": 0, "alerts": []}

    raised = client.get("/analytics").json()["alerts"]
    assert [a["type"] for a in raised] == ["market_stress", "risk"]

    logged = client.get("/alerts").json()
    assert logged["count"] == 2
    assert [a["id"] for a in logged["alerts"]] == [a["id"] for a in raised]

    r = client.delete(f"/alerts/{raised[0]['id']}")
    assert r.status_code == 200
    assert [a["type"] for a in r.json()["alerts"]] == ["risk"]

    assert client.delete(f"/alerts/{raised[0]['id']}").status_code == 404


def test_clear_alerts(client, fake_gateway):
    _queue_stressed_market(fake_gateway)
    client.get("/analytics")
    client.get("/analytics")

    assert client.delete("/alerts").json() == {"cleared": 4}
    assert client.get("/alerts").json()["count"] == 0
