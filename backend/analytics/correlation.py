"""
Correlation Engine — pairwise daily-consumption correlation between items.

Algorithm:
  1. Align both items by date over the union of their record dates,
     zero-filling the side that has no record (equal-length series).
  2. Require min_data_points aligned days, otherwise skip (nothing stored).
  3. Pearson r = cov(a, b) / (σa × σb); a constant series on either side
     leaves r undefined, which is skipped rather than stored as 0.
  4. Classify |r| into STRONG (≥ 0.7) / MODERATE (≥ 0.4) / WEAK (≥ 0.2)
     with the sign of r, else NO_CORRELATION.
  5. Describe the pair: co-consumption days, average gap between the two
     items' consumption events, and a Fisher-z confidence level.

The pair is normalized to its canonical key (lower id first) before any
computation, so swapping the inputs yields an identical result.
"""

import bisect
import math
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, TypeVar

import numpy as np
import pandas as pd

from analytics.errors import SkipReason
from core.config import AnalyticsThresholds

K = TypeVar("K")


class CorrelationType(str, Enum):
    STRONG_POSITIVE = "STRONG_POSITIVE"
    MODERATE_POSITIVE = "MODERATE_POSITIVE"
    WEAK_POSITIVE = "WEAK_POSITIVE"
    NO_CORRELATION = "NO_CORRELATION"
    WEAK_NEGATIVE = "WEAK_NEGATIVE"
    MODERATE_NEGATIVE = "MODERATE_NEGATIVE"
    STRONG_NEGATIVE = "STRONG_NEGATIVE"


def canonical_pair(item_a: K, item_b: K) -> tuple[K, K]:
    """Order a pair ascending so (a, b) and (b, a) share one key."""
    if item_a == item_b:
        raise ValueError(f"Cannot correlate an item with itself: {item_a}")
    return (item_a, item_b) if item_a < item_b else (item_b, item_a)


# ── Alignment ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AlignedSeries:
    dates: list[date]
    a: np.ndarray
    b: np.ndarray

    def __len__(self) -> int:
        return len(self.dates)


def _daily_series(records: Sequence[Any]) -> pd.Series:
    if not records:
        return pd.Series(dtype=float)
    series = pd.Series(
        [float(r.consumed_quantity or 0.0) for r in records],
        index=[r.consumption_date for r in records],
        dtype=float,
    )
    # Duplicate dates are summed
    return series.groupby(level=0).sum()


def align_series(records_a: Sequence[Any], records_b: Sequence[Any]) -> AlignedSeries:
    """Outer-join two items' daily consumption on date, zero-filling gaps."""
    frame = pd.concat({"a": _daily_series(records_a), "b": _daily_series(records_b)}, axis=1)
    frame = frame.fillna(0.0).sort_index()
    return AlignedSeries(
        dates=list(frame.index),
        a=frame["a"].to_numpy(dtype=float),
        b=frame["b"].to_numpy(dtype=float),
    )


# ── Statistics ────────────────────────────────────────────────────────────


def pearson_coefficient(x: np.ndarray, y: np.ndarray) -> float | None:
    """
    Pearson r rounded to 4 places, or None when undefined.

    Undefined covers mismatched/empty input and zero variance on either side.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.size != y.size or x.size < 2:
        return None
    if np.ptp(x) == 0 or np.ptp(y) == 0:
        return None

    dx = x - x.mean()
    dy = y - y.mean()
    sxx = float(np.dot(dx, dx))
    syy = float(np.dot(dy, dy))
    denominator = math.sqrt(sxx * syy)
    if denominator == 0:
        return None

    r = float(np.dot(dx, dy)) / denominator
    return round(min(1.0, max(-1.0, r)), 4)


def classify_correlation(coefficient: float, thresholds: AnalyticsThresholds) -> CorrelationType:
    """Band |r| (inclusive lower bounds) and attach the sign of r."""
    strength = abs(coefficient)
    positive = coefficient > 0
    if strength >= thresholds.strong_correlation:
        return CorrelationType.STRONG_POSITIVE if positive else CorrelationType.STRONG_NEGATIVE
    if strength >= thresholds.moderate_correlation:
        return CorrelationType.MODERATE_POSITIVE if positive else CorrelationType.MODERATE_NEGATIVE
    if strength >= thresholds.weak_correlation:
        return CorrelationType.WEAK_POSITIVE if positive else CorrelationType.WEAK_NEGATIVE
    return CorrelationType.NO_CORRELATION


def co_consumption_count(aligned: AlignedSeries) -> int:
    """Days on which both items consumed a positive quantity."""
    return int(np.count_nonzero((aligned.a > 0) & (aligned.b > 0)))


def _nearest_gaps(source: list[int], target: list[int]) -> list[int]:
    gaps = []
    for day in source:
        pos = bisect.bisect_left(target, day)
        candidates = []
        if pos < len(target):
            candidates.append(target[pos] - day)
        if pos > 0:
            candidates.append(day - target[pos - 1])
        gaps.append(min(candidates))
    return gaps


def average_time_gap_days(aligned: AlignedSeries) -> float | None:
    """
    Mean absolute day distance from each consumption event of one item to
    the nearest consumption event of the other, measured in both directions.
    """
    events_a = [d.toordinal() for d, qty in zip(aligned.dates, aligned.a) if qty > 0]
    events_b = [d.toordinal() for d, qty in zip(aligned.dates, aligned.b) if qty > 0]
    if not events_a or not events_b:
        return None
    gaps = _nearest_gaps(events_a, events_b) + _nearest_gaps(events_b, events_a)
    return round(sum(gaps) / len(gaps), 2)


def confidence_level(coefficient: float, data_points: int) -> float | None:
    """
    Two-sided confidence (percent) that r differs from zero.

    Fisher z-transform: z = atanh(r) × √(n − 3), p = erfc(|z| / √2).
    """
    if data_points <= 3:
        return None
    if abs(coefficient) >= 1.0:
        return 100.0
    z = math.atanh(coefficient) * math.sqrt(data_points - 3)
    p_value = math.erfc(abs(z) / math.sqrt(2))
    return round((1.0 - p_value) * 100.0, 2)


# ── Pair computation ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class CorrelationResult:
    item_low_id: uuid.UUID
    item_high_id: uuid.UUID
    coefficient: float
    correlation_type: CorrelationType
    confidence_level: float | None
    data_points: int
    co_consumption_count: int
    average_time_gap_days: float | None

    def as_fields(self) -> dict[str, Any]:
        """Column values for the ItemCorrelation row (keys excluded)."""
        return {
            "correlation_coefficient": self.coefficient,
            "correlation_type": self.correlation_type.value,
            "confidence_level": self.confidence_level,
            "data_points": self.data_points,
            "co_consumption_count": self.co_consumption_count,
            "average_time_gap_days": self.average_time_gap_days,
        }


@dataclass(frozen=True)
class CorrelationSkip:
    item_low_id: uuid.UUID
    item_high_id: uuid.UUID
    reason: SkipReason
    data_points: int = 0


def compute_correlation(
    item_a: uuid.UUID,
    records_a: Sequence[Any],
    item_b: uuid.UUID,
    records_b: Sequence[Any],
    thresholds: AnalyticsThresholds,
) -> CorrelationResult | CorrelationSkip:
    """Correlate two items' windowed consumption records."""
    if item_b < item_a:
        item_a, item_b = item_b, item_a
        records_a, records_b = records_b, records_a
    low, high = canonical_pair(item_a, item_b)

    aligned = align_series(records_a, records_b)
    n = len(aligned)
    if n < thresholds.min_data_points:
        return CorrelationSkip(low, high, SkipReason.INSUFFICIENT_DATA, n)

    coefficient = pearson_coefficient(aligned.a, aligned.b)
    if coefficient is None:
        return CorrelationSkip(low, high, SkipReason.UNDEFINED_VARIANCE, n)

    return CorrelationResult(
        item_low_id=low,
        item_high_id=high,
        coefficient=coefficient,
        correlation_type=classify_correlation(coefficient, thresholds),
        confidence_level=confidence_level(coefficient, n),
        data_points=n,
        co_consumption_count=co_consumption_count(aligned),
        average_time_gap_days=average_time_gap_days(aligned),
    )
