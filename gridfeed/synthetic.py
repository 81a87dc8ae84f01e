"""
GridFeed — Fallback Synthesizer
Generates plausible market values when live data is unavailable.

Method
------
  1. **Time oscillation** — ``sin(epoch_ms / 100000) * 0.1`` gives a smooth
     ±10 % swing with a period of roughly 10½ minutes, so successive polls
     drift instead of jumping.

  2. **Minute-level jitter** — a small perturbation in [-0.1, 0.1] drawn from
     an RNG seeded with MD5(data_type + minute).  Two calls inside the same
     minute agree exactly; the next minute moves slightly.

  3. **Domain clamps** — every derived field is clamped to a sane floor
     (price >= $20/MWh, demand >= 8000 MW, renewable share in [20, 80] %)
     at generation time, never patched afterwards.

Baselines are representative Alberta pool values (≈ $45/MWh, ≈ 9.9 GW
system load, gas-heavy generation mix with a large wind share).

The synthesizer is a pure function of ``(data_type, now)``: no I/O, and it
never raises.  An unrecognized data type yields ``None``.
"""

from __future__ import annotations

import hashlib
import math
import random
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from loguru import logger

from gridfeed.models import (
    DataResponse,
    DataSource,
    DataType,
    GenerationMixPayload,
    LoadForecastPayload,
    Payload,
    PricePayload,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OSCILLATION_PERIOD_MS = 100_000
OSCILLATION_AMPLITUDE = 0.1
JITTER_AMPLITUDE = 0.1

# Price ($/MWh)
BASE_POOL_PRICE = 45.67
AVERAGE_POOL_PRICE = 42.30
HIGH_DEMAND_PRICE = 60.0
MIN_CURRENT_PRICE = 20.0
MIN_PEAK_PRICE = 60.0
MIN_OFF_PEAK_PRICE = 15.0
MIN_CENTS_PER_KWH = 2.0

# Load (MW)
BASE_DEMAND_MW = 9850.0
PEAK_FORECAST_MW = 11200.0
MIN_DEMAND_MW = 8000.0
BASE_CAPACITY_MARGIN = 15.2
BASE_RESERVE_MARGIN = 18.7

# Generation mix — share of total for each fuel at zero oscillation
BASE_GENERATION_MW = 9850.0
GAS_SHARE = 0.42
WIND_SHARE = 0.28
HYDRO_SHARE = 0.15
SOLAR_SHARE = 0.05
COAL_SHARE = 0.08
MIN_COAL_SHARE = 0.01
MIN_RENEWABLE_PCT = 20.0
MAX_RENEWABLE_PCT = 80.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _clamp(value: float, low: float, high: float = math.inf) -> float:
    return max(low, min(high, value))


def _oscillation(now: datetime) -> float:
    epoch_ms = now.timestamp() * 1000.0
    return math.sin(epoch_ms / OSCILLATION_PERIOD_MS) * OSCILLATION_AMPLITUDE


def _jitter(data_type: DataType, now: datetime) -> float:
    """Deterministic perturbation in [-JITTER_AMPLITUDE, JITTER_AMPLITUDE]."""
    minute = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")
    seed = int(hashlib.md5(f"{data_type.value}|{minute}".encode()).hexdigest(), 16) % (2 ** 32)
    return (random.Random(seed).random() - 0.5) * 2 * JITTER_AMPLITUDE


# ---------------------------------------------------------------------------
# Per-type generators
# ---------------------------------------------------------------------------


def _price(osc: float, jitter: float, stamp: str) -> PricePayload:
    base = BASE_POOL_PRICE + osc * 15 + jitter * 10
    current = _clamp(round(base, 2), MIN_CURRENT_PRICE)
    return PricePayload(
        current_price=current,
        average_price=AVERAGE_POOL_PRICE,
        peak_price=round(_clamp(base * 1.8, MIN_PEAK_PRICE), 2),
        off_peak_price=round(_clamp(base * 0.6, MIN_OFF_PEAK_PRICE), 2),
        cents_per_kwh=_clamp(round(base / 10, 2), MIN_CENTS_PER_KWH),
        market_conditions="high_demand" if current > HIGH_DEMAND_PRICE else "normal",
        timestamp=stamp,
    )


def _load_forecast(osc: float, jitter: float, stamp: str) -> LoadForecastPayload:
    base = BASE_DEMAND_MW + osc * 800 + jitter * 500
    return LoadForecastPayload(
        current_demand_mw=_clamp(round(base), MIN_DEMAND_MW),
        peak_forecast_mw=PEAK_FORECAST_MW,
        forecast_date=stamp,
        capacity_margin=round(_clamp(BASE_CAPACITY_MARGIN + osc * 3, 0.0), 2),
        reserve_margin=round(_clamp(BASE_RESERVE_MARGIN + osc * 2, 0.0), 2),
    )


def _generation(osc: float, jitter: float, stamp: str) -> GenerationMixPayload:
    base = BASE_GENERATION_MW + osc * 500
    gas   = base * _clamp(GAS_SHARE + osc * 0.1, 0.0)
    wind  = base * _clamp(WIND_SHARE + osc * 0.15 + jitter * 0.05, 0.0)
    hydro = base * HYDRO_SHARE
    solar = base * (SOLAR_SHARE + max(0.0, osc * 0.03))
    coal  = base * _clamp(COAL_SHARE - osc * 0.05, MIN_COAL_SHARE)
    other = _clamp(base - (gas + wind + hydro + solar + coal), 0.0)

    # Total is the sum of the parts so every ratio below is self-consistent.
    total = gas + wind + hydro + solar + coal + other
    renewable_pct = (wind + hydro + solar) / total * 100 if total > 0 else MIN_RENEWABLE_PCT

    return GenerationMixPayload(
        natural_gas_mw=round(gas),
        wind_mw=round(wind),
        solar_mw=round(solar),
        hydro_mw=round(hydro),
        coal_mw=round(coal),
        other_mw=round(other),
        total_generation_mw=round(total),
        renewable_percentage=round(_clamp(renewable_pct, MIN_RENEWABLE_PCT, MAX_RENEWABLE_PCT), 1),
        timestamp=stamp,
    )


_GENERATORS: dict[DataType, Callable[[float, float, str], Payload]] = {
    DataType.PRICE:         _price,
    DataType.LOAD_FORECAST: _load_forecast,
    DataType.GENERATION:    _generation,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def synthesize(
    data_type: Union[DataType, str],
    now: Optional[datetime] = None,
    error: Optional[str] = None,
) -> Optional[DataResponse]:
    """
    Return a fallback ``DataResponse`` for *data_type* at wall-clock *now*.

    Parameters
    ----------
    data_type:
        A ``DataType`` or its string value.  Unknown values return None.
    now:
        Timezone-aware time to synthesize for.  Defaults to the current UTC
        time; naive datetimes are treated as UTC.
    error:
        Optional failure message carried on the response for diagnostics.
    """
    dt = DataType.parse(data_type)
    if dt is None:
        logger.debug("Synthesizer: no generator for data type {!r}.", data_type)
        return None

    if now is None:
        now = datetime.now(tz=timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    stamp = now.astimezone(timezone.utc).isoformat()
    payload = _GENERATORS[dt](_oscillation(now), _jitter(dt, now), stamp)

    return DataResponse(
        success=True,
        data_type=dt,
        source=DataSource.FALLBACK,
        payload=payload,
        timestamp=stamp,
        error=error,
    )
