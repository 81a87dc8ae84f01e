"""
GridFeed — Market Analytics
Derived indicators computed from the poller's current price and load values,
plus small descriptive statistics over recent history.

Market stress score
-------------------
    demand_ratio   = current_demand / peak_forecast × 100      (50 if no peak)
    price_stress   = min(100, current_price)                   ($100/MWh = 100)
    reserve_stress = max(0, (15 − reserve_margin) × 10)
    stress         = 0.4·demand_ratio + 0.4·price_stress + 0.2·reserve_stress

Clamped to 0–100.  Overall risk: > 70 high, > 50 medium, else low.

Price prediction is a persistence model (next hour = current price) with a
±15 % band; it is a placeholder baseline, not a forecast.

Statistics
----------
  price_statistics   mean / max / min / population std of a price series
  regression         Pearson r, r², least-squares slope and intercept
  zscore_anomalies   flags points more than *threshold* σ from the mean

Alerts raised by check_alerts can be kept in an AlertLog, a bounded list the
user dismisses one at a time or clears.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional, Sequence
from uuid import uuid4

import pandas as pd
from loguru import logger

from gridfeed.models import LoadForecastPayload, PricePayload, utc_now_iso

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PRICE_WEIGHT = 0.4
DEMAND_WEIGHT = 0.4
RESERVE_WEIGHT = 0.2
RESERVE_STRESS_PIVOT = 15.0   # % reserve margin below which stress accrues

PRICE_SPIKE_THRESHOLD = 100.0     # $/MWh
LOW_RESERVE_THRESHOLD = 10.0      # %
HIGH_DEMAND_RATIO = 85.0          # % of peak forecast
CRITICAL_DEMAND_RATIO = 90.0
TIGHT_DEMAND_RATIO = 80.0

HIGH_STRESS_SCORE = 70
MEDIUM_STRESS_SCORE = 50
HIGH_VOLATILITY = 75.0
DEFAULT_ALERT_LOG_SIZE = 100

PREDICTION_CONFIDENCE = 65
PREDICTION_BAND = 0.15
DEFAULT_ZSCORE_THRESHOLD = 2.5
MIN_REGRESSION_POINTS = 3


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class PricePrediction:
    next_hour_prediction: float
    confidence:           int
    trend_direction:      str   # "increasing" | "decreasing"
    low:                  float
    high:                 float


@dataclass
class CapacityGap:
    current_gap_mw:   float
    utilization_rate: int
    status:           str   # "critical" | "tight" | "adequate"
    recommendation:   str


@dataclass
class Risk:
    type:   str
    level:  str
    impact: str


@dataclass
class MarketAnalytics:
    market_stress_score: int
    price_prediction:    PricePrediction
    capacity_gap:        CapacityGap
    risks:               list[Risk]
    overall_risk_level:  str
    timestamp:           str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Alert:
    type:      str
    severity:  str
    message:   str
    timestamp: str = field(default_factory=utc_now_iso)
    id:        str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PriceStatistics:
    average_price:    float
    max_price:        float
    min_price:        float
    price_volatility: float
    total_records:    int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RegressionFit:
    r:         float
    r_squared: float
    slope:     float
    intercept: float

    def predict(self, x: float) -> float:
        return self.intercept + self.slope * x


# ---------------------------------------------------------------------------
# Market analytics
# ---------------------------------------------------------------------------


def market_analytics(price: PricePayload, load: LoadForecastPayload) -> MarketAnalytics:
    """Derive stress, capacity gap and risk indicators from current values."""
    current_price = price.current_price
    demand = load.current_demand_mw
    peak = load.peak_forecast_mw
    reserve = load.reserve_margin or 0.0

    demand_ratio = demand / peak * 100 if peak > 0 else 50.0
    price_stress = min(100.0, current_price)
    reserve_stress = max(0.0, (RESERVE_STRESS_PIVOT - reserve) * 10)
    stress = round(
        demand_ratio * DEMAND_WEIGHT + price_stress * PRICE_WEIGHT + reserve_stress * RESERVE_WEIGHT
    )
    stress = int(min(100, max(0, stress)))

    prediction = PricePrediction(
        next_hour_prediction=current_price,
        confidence=PREDICTION_CONFIDENCE,
        trend_direction="increasing" if current_price > price.average_price else "decreasing",
        low=round(current_price * (1 - PREDICTION_BAND), 2),
        high=round(current_price * (1 + PREDICTION_BAND), 2),
    )

    if demand_ratio > CRITICAL_DEMAND_RATIO:
        gap_status = "critical"
    elif demand_ratio > TIGHT_DEMAND_RATIO:
        gap_status = "tight"
    else:
        gap_status = "adequate"

    capacity_gap = CapacityGap(
        current_gap_mw=round(peak - demand),
        utilization_rate=round(demand_ratio),
        status=gap_status,
        recommendation="conservation_measures" if demand_ratio > CRITICAL_DEMAND_RATIO else "normal_operations",
    )

    risks: list[Risk] = []
    if current_price > PRICE_SPIKE_THRESHOLD:
        risks.append(Risk("price_spike", "high", "significant"))
    if reserve < LOW_RESERVE_THRESHOLD:
        risks.append(Risk("low_reserve", "high", "reliability_concern"))
    if demand_ratio > HIGH_DEMAND_RATIO:
        risks.append(Risk("high_demand", "medium", "moderate"))

    if stress > HIGH_STRESS_SCORE:
        overall = "high"
    elif stress > MEDIUM_STRESS_SCORE:
        overall = "medium"
    else:
        overall = "low"

    logger.debug(
        "Analytics: stress={} | demand_ratio={:.1f}% | risks={}",
        stress, demand_ratio, [r.type for r in risks],
    )
    return MarketAnalytics(
        market_stress_score=stress,
        price_prediction=prediction,
        capacity_gap=capacity_gap,
        risks=risks,
        overall_risk_level=overall,
    )


def check_alerts(
    analytics: Optional[MarketAnalytics] = None,
    statistics: Optional[PriceStatistics] = None,
) -> list[Alert]:
    """Return alerts for high stress, high overall risk and price volatility."""
    alerts: list[Alert] = []

    if analytics is not None:
        if analytics.market_stress_score > HIGH_STRESS_SCORE:
            alerts.append(Alert(
                type="market_stress",
                severity="high",
                message=f"High market stress level: {analytics.market_stress_score}/100",
            ))
        if analytics.overall_risk_level == "high":
            alerts.append(Alert(
                type="risk",
                severity="high",
                message="High overall market risk detected",
            ))

    if statistics is not None and statistics.price_volatility > HIGH_VOLATILITY:
        alerts.append(Alert(
            type="price_volatility",
            severity="medium",
            message=f"High price volatility detected: {statistics.price_volatility:.1f}",
        ))

    return alerts


class AlertLog:
    """
    Accumulated alerts, oldest first, until dismissed or cleared.

    Holds at most *max_size* alerts; the oldest are dropped first.
    """

    def __init__(self, max_size: int = DEFAULT_ALERT_LOG_SIZE) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._alerts: deque[Alert] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._alerts)

    def extend(self, alerts: Iterable[Alert]) -> None:
        for alert in alerts:
            logger.info("Alert raised: [{}] {}", alert.severity, alert.message)
            self._alerts.append(alert)

    def all(self) -> list[Alert]:
        return list(self._alerts)

    def dismiss(self, alert_id: str) -> bool:
        """Remove one alert.  Returns False if no alert has that id."""
        for alert in self._alerts:
            if alert.id == alert_id:
                self._alerts.remove(alert)
                return True
        return False

    def clear(self) -> int:
        """Remove every alert and return how many there were."""
        count = len(self._alerts)
        self._alerts.clear()
        return count


# ---------------------------------------------------------------------------
# Descriptive statistics
# ---------------------------------------------------------------------------


def price_statistics(prices: Sequence[float]) -> Optional[PriceStatistics]:
    """Summary statistics for a price series, or None when it is empty."""
    series = pd.Series(list(prices), dtype="float64").dropna()
    if series.empty:
        return None
    return PriceStatistics(
        average_price=round(float(series.mean()), 2),
        max_price=float(series.max()),
        min_price=float(series.min()),
        price_volatility=round(float(series.std(ddof=0)), 2),
        total_records=len(series),
    )


def regression(xs: Sequence[float], ys: Sequence[float]) -> RegressionFit:
    """
    Pearson correlation and least-squares line of *ys* on *xs*.

    Fewer than three points, or a constant series, yields zeros rather than
    an error.
    """
    if len(xs) != len(ys):
        raise ValueError(f"xs and ys differ in length ({len(xs)} != {len(ys)})")
    if len(xs) < MIN_REGRESSION_POINTS:
        return RegressionFit(0.0, 0.0, 0.0, 0.0)

    x = pd.Series(list(xs), dtype="float64")
    y = pd.Series(list(ys), dtype="float64")
    dx = x - x.mean()
    dy = y - y.mean()
    num = float((dx * dy).sum())
    den_x = float((dx ** 2).sum())
    den_y = float((dy ** 2).sum())

    r = num / (den_x * den_y) ** 0.5 if den_x > 0 and den_y > 0 else 0.0
    slope = num / den_x if den_x > 0 else 0.0
    intercept = float(y.mean()) - slope * float(x.mean())
    return RegressionFit(r=r, r_squared=r * r, slope=slope, intercept=intercept)


def zscore_anomalies(
    values: Sequence[float],
    threshold: float = DEFAULT_ZSCORE_THRESHOLD,
) -> list[bool]:
    """Flag each value whose |z-score| exceeds *threshold*."""
    series = pd.Series(list(values), dtype="float64")
    if series.empty:
        return []
    std = float(series.std(ddof=0))
    if std == 0:
        return [False] * len(series)
    z = (series - series.mean()) / std
    return [bool(flag) for flag in (z.abs() > threshold)]
