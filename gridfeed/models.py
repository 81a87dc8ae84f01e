"""
GridFeed — Data model
Typed shapes shared by the gateway client, synthesizer, poller and API.

Each data type maps to exactly one payload model, so callers branch on
``DataResponse.data_type`` and get a concrete payload back instead of an
untyped dict.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DataType(str, Enum):
    """Closed set of market data categories the gateway serves."""

    PRICE = "price"
    LOAD_FORECAST = "load_forecast"
    GENERATION = "generation"

    @property
    def action(self) -> str:
        """Gateway action name for this data type."""
        return _ACTIONS[self]

    @classmethod
    def parse(cls, value: Union["DataType", str]) -> Optional["DataType"]:
        """Return the matching member, or None for an unrecognized value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


_ACTIONS: dict[DataType, str] = {
    DataType.PRICE:         "fetch_current_prices",
    DataType.LOAD_FORECAST: "fetch_load_forecast",
    DataType.GENERATION:    "fetch_generation_mix",
}


class DataSource(str, Enum):
    """Provenance label attached to every response."""

    LIVE = "live"
    CACHED = "cached"
    FALLBACK = "fallback"


class ConnectionStatus(str, Enum):
    """Outcome of the most recently completed gateway request."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    FALLBACK = "fallback"


# ---------------------------------------------------------------------------
# Payload models  (one per DataType)
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class PricePayload(_Payload):
    current_price:     float           # $/MWh
    average_price:     float
    peak_price:        float
    off_peak_price:    float
    cents_per_kwh:     float
    market_conditions: str = "normal"  # "high_demand" | "normal"
    timestamp:         Optional[str] = None


class LoadForecastPayload(_Payload):
    current_demand_mw: float
    peak_forecast_mw:  float
    forecast_date:     Optional[str] = None
    capacity_margin:   Optional[float] = None   # %
    reserve_margin:    Optional[float] = None   # %


class GenerationMixPayload(_Payload):
    natural_gas_mw:       float
    wind_mw:              float
    solar_mw:             float
    hydro_mw:             float
    coal_mw:              float
    other_mw:             float
    total_generation_mw:  float
    renewable_percentage: float
    timestamp:            Optional[str] = None


Payload = Union[PricePayload, LoadForecastPayload, GenerationMixPayload]

PAYLOAD_MODELS: dict[DataType, type[_Payload]] = {
    DataType.PRICE:         PricePayload,
    DataType.LOAD_FORECAST: LoadForecastPayload,
    DataType.GENERATION:    GenerationMixPayload,
}


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def cache_key(data_type: DataType, params: Optional[Mapping[str, Any]] = None) -> str:
    """
    Stable key for a (data type, params) pair; params order does not matter.

    Names and values are percent-encoded, so a value containing ``&`` or
    ``=`` cannot collide with a different set of params.
    """
    if not params:
        return data_type.value
    encoded = urlencode(sorted((str(k), str(v)) for k, v in params.items()))
    return f"{data_type.value}?{encoded}"


class DataRequest(BaseModel):
    """What to fetch.  Immutable once issued."""

    model_config = ConfigDict(frozen=True)

    data_type: DataType
    params:    dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return cache_key(self.data_type, self.params)

    def gateway_body(self) -> dict[str, str]:
        """Request body for the function gateway: ``{action, ...params}``."""
        return {**self.params, "action": self.data_type.action}


class DataResponse(BaseModel):
    """One answer to a DataRequest.  Never mutated after it is returned."""

    model_config = ConfigDict(frozen=True)

    success:   bool
    data_type: DataType
    source:    DataSource
    payload:   Payload
    timestamp: str
    error:     Optional[str] = None

    def as_cached(self) -> "DataResponse":
        """Same payload and timestamp, relabelled as served from cache."""
        return self.model_copy(update={"source": DataSource.CACHED})
