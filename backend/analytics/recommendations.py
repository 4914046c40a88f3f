"""
Recommendation Selector — "frequently consumed together" ranking.

Ranks an item's active correlations by |r| (descending), keeping only those
at or above the significance threshold. Equal strengths rank the most
recently recalculated correlation first.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from analytics.correlation import CorrelationType


@dataclass(frozen=True)
class Recommendation:
    item_id: uuid.UUID  # counterpart item
    coefficient: float
    correlation_type: CorrelationType
    last_calculated: datetime | None


def is_significant(coefficient: float | None, threshold: float) -> bool:
    return coefficient is not None and abs(coefficient) >= threshold


def rank_correlations(
    correlations: Iterable[Any],
    item_id: uuid.UUID,
    threshold: float,
    limit: int,
) -> list[Recommendation]:
    if limit <= 0:
        return []

    qualifying = [
        corr
        for corr in correlations
        if corr.is_active
        and item_id in (corr.item_low_id, corr.item_high_id)
        and is_significant(corr.correlation_coefficient, threshold)
    ]
    qualifying.sort(
        key=lambda c: (abs(c.correlation_coefficient), c.last_calculated or datetime.min),
        reverse=True,
    )

    return [
        Recommendation(
            item_id=corr.item_high_id if corr.item_low_id == item_id else corr.item_low_id,
            coefficient=corr.correlation_coefficient,
            correlation_type=CorrelationType(corr.correlation_type),
            last_calculated=corr.last_calculated,
        )
        for corr in qualifying[:limit]
    ]
