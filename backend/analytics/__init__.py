"""
Consumption analytics core.

Derives per-item volatility/coverage profiles and pairwise consumption
correlations from the daily consumption ledger, decides which of them are
stale, and ranks "frequently consumed together" recommendations:
  - profiler          pure per-item statistics (CV, volatility, coverage)
  - correlation       pure pairwise Pearson correlation over aligned dates
  - staleness         which profiles / pairs a refresh pass should touch
  - recommendations   significance filter + ranking
  - store / service   async persistence and orchestration

Usage:
    from analytics import ConsumptionAnalyticsService, RefreshScope

    service = ConsumptionAnalyticsService(db)
    summary = await service.refresh_all(RefreshScope.STALE)
    await db.commit()
"""

from analytics.correlation import CorrelationResult, CorrelationSkip, CorrelationType, canonical_pair
from analytics.errors import CategoryNotFoundError, ItemNotFoundError, SkipReason
from analytics.profiler import ItemProfile, VolatilityClass
from analytics.service import ConsumptionAnalyticsService, RefreshSummary
from analytics.staleness import RefreshScope

__all__ = [
    "ConsumptionAnalyticsService",
    "RefreshSummary",
    "RefreshScope",
    "ItemProfile",
    "VolatilityClass",
    "CorrelationResult",
    "CorrelationSkip",
    "CorrelationType",
    "canonical_pair",
    "SkipReason",
    "ItemNotFoundError",
    "CategoryNotFoundError",
]
