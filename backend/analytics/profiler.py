"""
Statistical Profiler — per-item consumption volatility and coverage.

Turns an item's daily consumption history into an immutable ItemProfile:

  mean / sample std dev of consumed quantity
  CV             = std / mean                (undefined when mean = 0)
  volatility     = CV band (LOW < 0.25 ≤ MEDIUM < 0.5 ≤ HIGH < 1.0 ≤ VERY_HIGH)
  coverage_days  = floor(current_qty / mean)  (undefined when mean = 0)
  stockout_date  = today + coverage_days

Every division is guarded: a zero denominator yields None, never inf or an
exception. Fewer than two records is "insufficient data", which is a
different state from zero variance.

Persistence is not done here; see analytics.service.
"""

import math
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any

import numpy as np
import pandas as pd

from core.config import AnalyticsThresholds

MIN_PROFILE_RECORDS = 2
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class VolatilityClass(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


HIGH_VOLATILITY = frozenset({VolatilityClass.HIGH, VolatilityClass.VERY_HIGH})


@dataclass(frozen=True)
class ItemProfile:
    """Statistical profile of one item over a lookback window."""

    item_id: uuid.UUID | None
    window_days: int
    data_points: int
    mean: float | None = None
    std_dev: float | None = None
    coefficient_of_variation: float | None = None
    volatility: VolatilityClass | None = None
    coverage_days: int | None = None
    expected_stockout_date: date | None = None

    @property
    def sufficient_data(self) -> bool:
        return self.mean is not None

    @property
    def is_highly_volatile(self) -> bool:
        return self.volatility in HIGH_VOLATILITY

    def as_item_fields(self) -> dict[str, Any]:
        """Column values for the Item catalog row."""
        return {
            "avg_daily_consumption": self.mean,
            "consumption_std_dev": self.std_dev,
            "coefficient_of_variation": self.coefficient_of_variation,
            "volatility_classification": self.volatility.value if self.volatility else None,
            "is_highly_volatile": self.is_highly_volatile,
            "coverage_days": self.coverage_days,
            "expected_stockout_date": self.expected_stockout_date,
        }


# ── Scalar helpers ────────────────────────────────────────────────────────


def _consumed_values(records: Iterable[Any]) -> list[float]:
    return [float(r.consumed_quantity or 0.0) for r in records]


def coefficient_of_variation(mean: float | None, std_dev: float | None) -> float | None:
    """std / mean, or None when mean is missing or not positive."""
    if mean is None or std_dev is None or mean <= 0:
        return None
    return std_dev / mean


def classify_volatility(cv: float | None, thresholds: AnalyticsThresholds) -> VolatilityClass | None:
    """
    Map a CV to a volatility band; lower bounds are inclusive.

    An undefined CV takes the configured fallback class (MEDIUM by default,
    matching stock-alert defaulting), or None when the fallback is disabled.
    """
    if cv is None:
        fallback = thresholds.undefined_cv_volatility
        return VolatilityClass(fallback) if fallback else None
    if cv >= thresholds.very_high_cv:
        return VolatilityClass.VERY_HIGH
    if cv >= thresholds.high_cv:
        return VolatilityClass.HIGH
    if cv >= thresholds.medium_cv:
        return VolatilityClass.MEDIUM
    return VolatilityClass.LOW


def coverage_days(current_quantity: float | None, mean: float | None) -> int | None:
    """Whole days current stock lasts at the mean rate; None when undefined."""
    if mean is None or mean <= 0 or current_quantity is None:
        return None
    return max(0, math.floor(current_quantity / mean))


def is_abnormal_consumption(
    consumed: float | None,
    mean: float | None,
    thresholds: AnalyticsThresholds,
) -> bool:
    """A day is abnormal when consumed / mean ≥ spike ratio or ≤ drop ratio."""
    if consumed is None or mean is None or mean <= 0:
        return False
    ratio = consumed / mean
    return ratio >= thresholds.spike_ratio or ratio <= thresholds.drop_ratio


def abnormal_days(records: Sequence[Any], mean: float | None, thresholds: AnalyticsThresholds) -> list[Any]:
    return [r for r in records if is_abnormal_consumption(r.consumed_quantity, mean, thresholds)]


# ── Profile ───────────────────────────────────────────────────────────────


def compute_profile(
    records: Sequence[Any],
    current_quantity: float | None,
    today: date,
    thresholds: AnalyticsThresholds,
    window_days: int = 30,
    item_id: uuid.UUID | None = None,
) -> ItemProfile:
    """
    Build an ItemProfile from consumption records.

    records: objects exposing consumed_quantity (ConsumptionRecord rows or
    equivalents), already limited to the lookback window.
    """
    if len(records) < MIN_PROFILE_RECORDS:
        return ItemProfile(item_id=item_id, window_days=window_days, data_points=len(records))

    values = np.asarray(_consumed_values(records), dtype=float)
    mean = float(values.mean())
    std_dev = float(values.std(ddof=1))
    cv = coefficient_of_variation(mean, std_dev)
    coverage = coverage_days(current_quantity, mean)

    return ItemProfile(
        item_id=item_id,
        window_days=window_days,
        data_points=len(records),
        mean=mean,
        std_dev=std_dev,
        coefficient_of_variation=cv,
        volatility=classify_volatility(cv, thresholds),
        coverage_days=coverage,
        expected_stockout_date=today + timedelta(days=coverage) if coverage is not None else None,
    )


# ── Consumption summary ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ConsumptionSummary:
    """Descriptive statistics for an item's consumption window."""

    window_days: int
    total_records: int
    total_consumption: float
    median: float | None
    minimum: float | None
    maximum: float | None
    value_range: float | None
    percentile_25: float | None
    percentile_75: float | None
    percentile_90: float | None
    trend: str
    consumption_pattern: str
    days_with_activity: int
    activity_rate: float | None
    day_of_week_averages: dict[str, float] = field(default_factory=dict)
    weekday_average: float | None = None
    weekend_average: float | None = None
    forecast_next_period: float | None = None


def nearest_rank_percentile(values: Sequence[float], percentile: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    index = math.ceil(percentile / 100.0 * len(ordered)) - 1
    index = max(0, min(index, len(ordered) - 1))
    return ordered[index]


def analyze_trend(values: Sequence[float], slope_band: float = 0.1) -> str:
    """Least-squares slope over the sequence index."""
    if len(values) < 3:
        return "INSUFFICIENT_DATA"
    slope = float(np.polyfit(np.arange(len(values), dtype=float), np.asarray(values, dtype=float), 1)[0])
    if slope > slope_band:
        return "INCREASING"
    if slope < -slope_band:
        return "DECREASING"
    return "STABLE"


def consumption_pattern(values: Sequence[float]) -> str:
    if not values:
        return "NO_DATA"
    zero_ratio = sum(1 for v in values if v == 0) / len(values)
    if zero_ratio > 0.7:
        return "SPORADIC"
    if zero_ratio > 0.3:
        return "IRREGULAR"
    return "REGULAR"


def forecast_next_period(values: Sequence[float], trend: str) -> float | None:
    if not values:
        return None
    if trend == "INCREASING":
        return values[-1] * 1.1
    if trend == "DECREASING":
        return values[-1] * 0.9
    return float(np.mean(values))


def summarize_consumption(records: Sequence[Any], window_days: int) -> ConsumptionSummary:
    """Median, percentiles, trend, pattern and day-of-week seasonality."""
    ordered = sorted(records, key=lambda r: r.consumption_date)
    values = _consumed_values(ordered)
    trend = analyze_trend(values)

    dow_averages: dict[str, float] = {}
    weekday_avg = weekend_avg = None
    if ordered:
        df = pd.DataFrame(
            {
                "date": pd.to_datetime([r.consumption_date for r in ordered]),
                "consumed": values,
            }
        )
        by_dow = df.groupby(df["date"].dt.dayofweek)["consumed"].mean()
        dow_averages = {DAY_NAMES[int(dow)]: float(avg) for dow, avg in by_dow.items()}
        weekdays = by_dow[by_dow.index < 5]
        weekends = by_dow[by_dow.index >= 5]
        weekday_avg = float(weekdays.mean()) if not weekdays.empty else None
        weekend_avg = float(weekends.mean()) if not weekends.empty else None

    active_days = sum(1 for v in values if v > 0)
    minimum = min(values) if values else None
    maximum = max(values) if values else None

    return ConsumptionSummary(
        window_days=window_days,
        total_records=len(values),
        total_consumption=float(sum(values)),
        median=float(np.median(values)) if values else None,
        minimum=minimum,
        maximum=maximum,
        value_range=(maximum - minimum) if values else None,
        percentile_25=nearest_rank_percentile(values, 25),
        percentile_75=nearest_rank_percentile(values, 75),
        percentile_90=nearest_rank_percentile(values, 90),
        trend=trend,
        consumption_pattern=consumption_pattern(values),
        days_with_activity=active_days,
        activity_rate=round(active_days / window_days, 2) if window_days > 0 else None,
        day_of_week_averages=dow_averages,
        weekday_average=weekday_avg,
        weekend_average=weekend_avg,
        forecast_next_period=forecast_next_period(values, trend),
    )


# ── Category statistics ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ItemConsumptionStat:
    item_id: uuid.UUID
    total_consumption: float
    average_consumption: float
    coefficient_of_variation: float | None


@dataclass(frozen=True)
class CategoryStatistics:
    window_days: int
    total_items: int
    total_records: int
    total_consumption: float
    category_cv: float | None
    category_volatility: VolatilityClass | None
    item_statistics: list[ItemConsumptionStat]

    @property
    def top_consuming_items(self) -> list[ItemConsumptionStat]:
        return self.item_statistics[:5]


def _sample_std(values: np.ndarray) -> float:
    return float(values.std(ddof=1)) if len(values) > 1 else 0.0


def compute_category_statistics(
    records_by_item: dict[uuid.UUID, Sequence[Any]],
    thresholds: AnalyticsThresholds,
    window_days: int,
) -> CategoryStatistics:
    """
    Per-item totals and CVs for one category, plus a category-wide CV
    computed over the per-item totals.
    """
    stats = []
    for item_id, records in records_by_item.items():
        values = np.asarray(_consumed_values(records), dtype=float)
        if values.size == 0:
            continue
        mean = float(values.mean())
        stats.append(
            ItemConsumptionStat(
                item_id=item_id,
                total_consumption=float(values.sum()),
                average_consumption=mean,
                coefficient_of_variation=coefficient_of_variation(mean, _sample_std(values)),
            )
        )
    stats.sort(key=lambda s: s.total_consumption, reverse=True)

    totals = np.asarray([s.total_consumption for s in stats], dtype=float)
    category_cv = None
    if totals.size:
        category_cv = coefficient_of_variation(float(totals.mean()), _sample_std(totals))

    return CategoryStatistics(
        window_days=window_days,
        total_items=len(stats),
        total_records=sum(len(r) for r in records_by_item.values()),
        total_consumption=float(totals.sum()) if totals.size else 0.0,
        category_cv=category_cv,
        category_volatility=classify_volatility(category_cv, thresholds) if totals.size else None,
        item_statistics=stats,
    )
