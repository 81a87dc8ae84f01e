"""
GridFeed — FastAPI service
Serves the market-data poller's current values, connection status and
derived analytics to dashboard clients.

Run:  uvicorn api:app --reload --port 8000
Docs: http://localhost:8000/docs

One MarketDataPoller is created per process in the lifespan handler and
polls the function gateway in the background.  Endpoints read its state;
they never call the gateway directly except to fill a value that has not
been fetched yet.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel

from gridfeed.analytics import (
    DEFAULT_ZSCORE_THRESHOLD,
    Alert,
    AlertLog,
    check_alerts,
    market_analytics,
    price_statistics,
    zscore_anomalies,
)
from gridfeed.config import Settings, configure_logging
from gridfeed.gateway import HttpGateway
from gridfeed.models import (
    DataResponse,
    DataSource,
    DataType,
    LoadForecastPayload,
    PricePayload,
    utc_now_iso,
)
from gridfeed.poller import MarketDataPoller

API_VERSION = "1.0"


# ---------------------------------------------------------------------------
# Lifespan — one gateway client and one poller for the process lifetime
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the gateway and poller, start polling, and tear both down on exit.

    ``app.state.gateway`` may be pre-set to substitute another gateway
    (it is then left open on shutdown), and ``app.state.autostart = False``
    skips the background poll loop.
    """
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    injected = getattr(app.state, "gateway", None)
    gateway = injected or HttpGateway.from_settings(settings)
    poller = MarketDataPoller.from_settings(gateway, settings)
    app.state.poller = poller
    app.state.alerts = AlertLog()

    if getattr(app.state, "autostart", True):
        poller.start()
    logger.info("GridFeed API ready | gateway={}", getattr(gateway, "base_url", type(gateway).__name__))

    yield

    await poller.stop()
    if injected is None:
        await gateway.aclose()
    logger.info("GridFeed API shut down.")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="GridFeed API",
    description=(
        "Energy market data (pool price, load forecast, generation mix) with "
        "TTL caching and simulated fallback when the live source is down."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MarketMeta(BaseModel):
    """Metadata present on every market data response."""
    api_version:       str = API_VERSION
    data_type:         str
    source:            str   # "live" | "cached" | "fallback"
    is_simulated:      bool
    connection_status: str   # "connecting" | "connected" | "fallback"
    timestamp:         str   # when the value was produced
    error:             Optional[str] = None


class MarketResponse(BaseModel):
    meta: MarketMeta
    data: dict[str, Any]


class HealthResponse(BaseModel):
    status:            str
    timestamp:         str
    connection_status: str


class DataTypeStatus(BaseModel):
    data_type: str
    source:    Optional[str] = None
    timestamp: Optional[str] = None


class StatusResponse(BaseModel):
    connection_status:    str
    consecutive_failures: int
    polling:              bool
    poll_interval_s:      float
    cache_ttl_s:          float
    data_types:           list[DataTypeStatus]


class AnalyticsResponse(BaseModel):
    is_simulated: bool
    analytics:    dict[str, Any]
    alerts:       list[dict[str, Any]]


class PriceStatsResponse(BaseModel):
    statistics:       Optional[dict[str, Any]]
    prices:           list[float]   # live observations only
    anomalies:        list[bool]
    threshold:        float
    cached_points:    int           # re-serves of an earlier live value, skipped
    simulated_points: int           # fallback values, skipped
    alerts:           list[dict[str, Any]]


class AlertsResponse(BaseModel):
    count:  int
    alerts: list[dict[str, Any]]   # oldest first


class ClearedResponse(BaseModel):
    cleared: int


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _poller(request: Request) -> MarketDataPoller:
    return request.app.state.poller


def _record_alerts(request: Request, alerts: list[Alert]) -> list[dict[str, Any]]:
    request.app.state.alerts.extend(alerts)
    return [a.to_dict() for a in alerts]


def _parse_type(value: str) -> DataType:
    dt = DataType.parse(value)
    if dt is None:
        valid = ", ".join(t.value for t in DataType)
        raise HTTPException(status_code=404, detail=f"Unknown data type '{value}'. Valid: {valid}.")
    return dt


async def _current_or_fetch(poller: MarketDataPoller, data_type: DataType) -> DataResponse:
    response = poller.get_current(data_type) or await poller.fetch(data_type)
    if response is None:
        raise HTTPException(status_code=503, detail=f"No {data_type.value} data available.")
    return response


def _to_market_response(response: DataResponse, poller: MarketDataPoller) -> MarketResponse:
    return MarketResponse(
        meta=MarketMeta(
            data_type=response.data_type.value,
            source=response.source.value,
            is_simulated=response.source is DataSource.FALLBACK,
            connection_status=poller.status.value,
            timestamp=response.timestamp,
            error=response.error,
        ),
        data=response.payload.model_dump(),
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse, tags=["Meta"])
async def health(request: Request):
    """Service liveness plus the poller's connection status."""
    return HealthResponse(
        status="ok",
        timestamp=utc_now_iso(),
        connection_status=_poller(request).status.value,
    )


@app.get("/status", response_model=StatusResponse, tags=["Meta"])
async def get_status(request: Request):
    """
    Connection status and per-data-type provenance.

    `source` is null for a data type that has not been fetched yet.
    """
    poller = _poller(request)
    entries = []
    for dt in poller.data_types:
        current = poller.get_current(dt)
        entries.append(DataTypeStatus(
            data_type=dt.value,
            source=current.source.value if current else None,
            timestamp=current.timestamp if current else None,
        ))
    return StatusResponse(
        connection_status=poller.status.value,
        consecutive_failures=poller.consecutive_failures,
        polling=poller.running,
        poll_interval_s=poller.poll_interval,
        cache_ttl_s=poller.cache.ttl,
        data_types=entries,
    )


@app.get("/market/price/stats", response_model=PriceStatsResponse, tags=["Analytics"])
async def get_price_stats(
    request: Request,
    threshold: float = Query(
        default=DEFAULT_ZSCORE_THRESHOLD,
        gt=0,
        le=10,
        description="Z-score magnitude above which a price is flagged as anomalous.",
    ),
):
    """
    Rolling statistics over the live prices in the poller's recent history.

    Includes mean / max / min / volatility, a per-point anomaly flag, and a
    volatility alert when the series is unusually noisy.  Cache re-serves
    and simulated values are counted but left out of every statistic.
    """
    history = _poller(request).history(DataType.PRICE)
    prices = [
        r.payload.current_price
        for r in history
        if r.source is DataSource.LIVE and isinstance(r.payload, PricePayload)
    ]
    stats = price_statistics(prices)
    return PriceStatsResponse(
        statistics=stats.to_dict() if stats else None,
        prices=prices,
        anomalies=zscore_anomalies(prices, threshold),
        threshold=threshold,
        cached_points=sum(r.source is DataSource.CACHED for r in history),
        simulated_points=sum(r.source is DataSource.FALLBACK for r in history),
        alerts=_record_alerts(request, check_alerts(statistics=stats)),
    )


@app.get("/market/{data_type}", response_model=MarketResponse, tags=["Market"])
async def get_market(data_type: str, request: Request):
    """
    Return the freshest value for one data type.

    - **data_type**: `price`, `load_forecast` or `generation`

    If the poller has not produced a value yet, one fetch is performed.
    `meta.source` tells whether the value is live, cached or simulated.
    """
    dt = _parse_type(data_type)
    poller = _poller(request)
    response = await _current_or_fetch(poller, dt)
    logger.info("GET /market/{} | source={}", dt.value, response.source.value)
    return _to_market_response(response, poller)


@app.post("/refresh", response_model=list[MarketResponse], tags=["Market"])
async def refresh(request: Request):
    """Re-fetch every configured data type now and return the results."""
    poller = _poller(request)
    results = await poller.refetch_all()
    logger.info("POST /refresh | status={}", poller.status.value)
    return [_to_market_response(r, poller) for r in results.values() if r is not None]


@app.get("/analytics", response_model=AnalyticsResponse, tags=["Analytics"])
async def get_analytics(request: Request):
    """
    Market stress, capacity gap and risk indicators from current price and
    load values, plus any triggered alerts.
    """
    poller = _poller(request)
    price = await _current_or_fetch(poller, DataType.PRICE)
    load = await _current_or_fetch(poller, DataType.LOAD_FORECAST)

    if not isinstance(price.payload, PricePayload) or not isinstance(load.payload, LoadForecastPayload):
        raise HTTPException(status_code=503, detail="Price or load data has an unexpected shape.")

    result = market_analytics(price.payload, load.payload)
    return AnalyticsResponse(
        is_simulated=DataSource.FALLBACK in (price.source, load.source),
        analytics=result.to_dict(),
        alerts=_record_alerts(request, check_alerts(analytics=result)),
    )


@app.get("/alerts", response_model=AlertsResponse, tags=["Alerts"])
async def list_alerts(request: Request):
    """Alerts raised by `/analytics` and `/market/price/stats` that have not been dismissed."""
    alerts = request.app.state.alerts.all()
    return AlertsResponse(count=len(alerts), alerts=[a.to_dict() for a in alerts])


@app.delete("/alerts/{alert_id}", response_model=AlertsResponse, tags=["Alerts"])
async def dismiss_alert(alert_id: str, request: Request):
    """Dismiss one alert and return the ones that remain."""
    log: AlertLog = request.app.state.alerts
    if not log.dismiss(alert_id):
        raise HTTPException(status_code=404, detail=f"No alert with id '{alert_id}'.")
    remaining = log.all()
    return AlertsResponse(count=len(remaining), alerts=[a.to_dict() for a in remaining])


@app.delete("/alerts", response_model=ClearedResponse, tags=["Alerts"])
async def clear_alerts(request: Request):
    """Dismiss every alert."""
    cleared = request.app.state.alerts.clear()
    logger.info("DELETE /alerts | cleared={}", cleared)
    return ClearedResponse(cleared=cleared)
