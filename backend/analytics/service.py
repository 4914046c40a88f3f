"""
Consumption Analytics Service — orchestrates profiler, correlation engine,
staleness scheduler and recommendation selector over the ConsumptionStore.

Single-unit operations (refresh_profile, refresh_correlation) flush but do
not commit; the caller owns the transaction. refresh_all is the long-running
batch: each profile or pair runs in its own SAVEPOINT and is committed
before the next unit starts, so aborting between units (should_stop) never
leaves a half-written result behind.

Windows are inclusive on both ends: [today − window_days, today].
"""

import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from analytics.correlation import (
    CorrelationResult,
    CorrelationSkip,
    CorrelationType,
    canonical_pair,
    compute_correlation,
)
from analytics.errors import CategoryNotFoundError, ItemNotFoundError, SkipReason
from analytics.profiler import (
    CategoryStatistics,
    ConsumptionSummary,
    ItemProfile,
    abnormal_days,
    compute_category_statistics,
    compute_profile,
    summarize_consumption,
)
from analytics.recommendations import is_significant, rank_correlations
from analytics.staleness import RefreshScope, candidate_pairs_for_item, plan_refresh
from analytics.store import ConsumptionStore
from core.config import AnalyticsThresholds, Settings, get_settings, get_thresholds
from db.models import Category, Item

logger = structlog.get_logger()


# ── Result types ──────────────────────────────────────────────────────────


@dataclass
class RefreshSummary:
    """Counts reported by one refresh_all pass."""

    scope: str
    started_at: datetime
    completed_at: datetime | None = None
    profiles_updated: int = 0
    profiles_insufficient_data: int = 0
    correlations_updated: int = 0
    correlations_insufficient_data: int = 0
    correlations_undefined_variance: int = 0
    correlations_not_found: int = 0
    failures: dict[str, str] = field(default_factory=dict)
    aborted: bool = False

    @property
    def skipped(self) -> int:
        return (
            self.profiles_insufficient_data
            + self.correlations_insufficient_data
            + self.correlations_undefined_variance
            + self.correlations_not_found
        )

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        data["skipped"] = self.skipped
        return data


@dataclass(frozen=True)
class CorrelatedItem:
    """A recommendation enriched with the counterpart's stock position."""

    item_id: uuid.UUID
    name: str
    coefficient: float
    correlation_type: CorrelationType
    last_calculated: datetime | None
    current_quantity: float | None
    reorder_level: float | None
    needs_reorder: bool


@dataclass(frozen=True)
class ItemStatistics:
    item_id: uuid.UUID
    name: str
    profile: ItemProfile
    summary: ConsumptionSummary
    abnormal_dates: list[date]


@dataclass(frozen=True)
class CorrelationStatistics:
    total_correlations: int
    average_coefficient: float | None
    max_coefficient: float | None
    min_coefficient: float | None
    strong_positive_count: int
    strong_negative_count: int
    significant_count: int
    by_type: dict[str, int]
    last_calculated: datetime | None


# ── Service ───────────────────────────────────────────────────────────────


def _inactive_pair(
    low: uuid.UUID,
    high: uuid.UUID,
    item_low: Item | None,
    item_high: Item | None,
) -> CorrelationSkip | None:
    """A missing or deactivated member turns the pair into an ITEM_NOT_FOUND skip."""
    for item in (item_low, item_high):
        if item is None or not item.is_active:
            return CorrelationSkip(low, high, SkipReason.ITEM_NOT_FOUND)
    return None


class ConsumptionAnalyticsService:
    """
    Entry point for every analytics operation.

    Usage:
        service = ConsumptionAnalyticsService(db)
        profile = await service.refresh_profile(item_id)
        summary = await service.refresh_all(RefreshScope.STALE)
    """

    def __init__(
        self,
        db: AsyncSession,
        thresholds: AnalyticsThresholds | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.thresholds = thresholds or get_thresholds(self.settings)
        self.store = ConsumptionStore(db)
        self._clock = clock

    # ── Profiles ──────────────────────────────────────────────────────

    async def refresh_profile(self, item_id: uuid.UUID, window_days: int | None = None) -> ItemProfile:
        """Recompute and persist an item's statistical profile."""
        window_days = window_days or self.settings.profile_window_days
        item = await self.store.require_item(item_id)
        now = self._clock()
        today = now.date()

        records = await self.store.fetch_consumption_records(item_id, today - timedelta(days=window_days), today)
        profile = compute_profile(
            records,
            item.current_quantity,
            today,
            self.thresholds,
            window_days=window_days,
            item_id=item_id,
        )
        await self.store.update_item_profile(item_id, profile, now)

        if profile.sufficient_data:
            logger.info(
                "profile.updated",
                item_id=str(item_id),
                data_points=profile.data_points,
                cv=profile.coefficient_of_variation,
                volatility=profile.volatility.value if profile.volatility else None,
                coverage_days=profile.coverage_days,
            )
        else:
            logger.info("profile.insufficient_data", item_id=str(item_id), data_points=profile.data_points)
        return profile

    # ── Correlations ──────────────────────────────────────────────────

    async def refresh_correlation(
        self,
        item_a: uuid.UUID,
        item_b: uuid.UUID,
        window_days: int | None = None,
    ) -> CorrelationResult | CorrelationSkip:
        """
        Recompute one pair and upsert its row.

        Skipped pairs (insufficient data, undefined variance, a deactivated
        member) write nothing; a previously stored row is left as it was.
        """
        window_days = window_days or self.settings.correlation_window_days
        low, high = canonical_pair(item_a, item_b)
        item_low = await self.store.require_item(low)
        item_high = await self.store.require_item(high)
        today = self._clock().date()
        start = today - timedelta(days=window_days)

        inactive = _inactive_pair(low, high, item_low, item_high)
        if inactive is not None:
            logger.info("correlation.skipped", item_low_id=str(low), item_high_id=str(high), reason=inactive.reason.value)
            return inactive

        records_low = await self.store.fetch_consumption_records(low, start, today)
        records_high = await self.store.fetch_consumption_records(high, start, today)
        return await self._store_correlation(item_low, records_low, item_high, records_high)

    async def _store_correlation(
        self,
        item_low: Any,
        records_low: list[Any],
        item_high: Any,
        records_high: list[Any],
    ) -> CorrelationResult | CorrelationSkip:
        result = compute_correlation(item_low.item_id, records_low, item_high.item_id, records_high, self.thresholds)
        if isinstance(result, CorrelationSkip):
            logger.info(
                "correlation.skipped",
                item_low_id=str(result.item_low_id),
                item_high_id=str(result.item_high_id),
                reason=result.reason.value,
                data_points=result.data_points,
            )
            return result

        shared_category = item_low.category_id if item_low.category_id == item_high.category_id else None
        await self.store.upsert_correlation(
            result.item_low_id,
            result.item_high_id,
            result.as_fields(),
            self._clock(),
            category_id=shared_category,
        )
        logger.info(
            "correlation.updated",
            item_low_id=str(result.item_low_id),
            item_high_id=str(result.item_high_id),
            coefficient=result.coefficient,
            correlation_type=result.correlation_type.value,
            data_points=result.data_points,
        )
        return result

    # ── Batch refresh ─────────────────────────────────────────────────

    async def refresh_all(
        self,
        scope: RefreshScope = RefreshScope.STALE,
        category_id: uuid.UUID | None = None,
        cutoff: timedelta | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> RefreshSummary:
        """
        Recompute profiles and pairs for the scope, one committed unit at a time.

        should_stop is polled between units; once it returns True the pass
        ends with aborted=True and every finished unit stays committed.
        """
        scope = RefreshScope(scope)
        if scope is RefreshScope.CATEGORY and category_id is None:
            raise ValueError("category_id is required for a category refresh")
        scoped_category = category_id if scope is RefreshScope.CATEGORY else None
        cutoff = cutoff or timedelta(hours=self.settings.staleness_cutoff_hours)

        now = self._clock()
        today = now.date()
        summary = RefreshSummary(scope=scope.value, started_at=now)
        correlation_start = today - timedelta(days=self.settings.correlation_window_days)

        items = await self.store.list_active_items(scoped_category)
        correlations = await self.store.list_correlations(active_only=True)
        windows = await self.store.activity_windows(correlation_start, today, scoped_category)
        plan = plan_refresh(items, correlations, windows, scope, now, cutoff)

        logger.info(
            "analytics_refresh.started",
            scope=scope.value,
            category_id=str(category_id) if category_id else None,
            profiles=len(plan.profile_item_ids),
            pairs=len(plan.pairs),
        )

        for item_id in plan.profile_item_ids:
            if should_stop is not None and should_stop():
                summary.aborted = True
                break
            profile = await self._run_unit(summary, f"profile:{item_id}", lambda i=item_id: self.refresh_profile(i))
            if profile is None:
                continue
            if profile.sufficient_data:
                summary.profiles_updated += 1
            else:
                summary.profiles_insufficient_data += 1

        if not summary.aborted:
            await self._refresh_pairs(summary, plan.pairs, correlation_start, today, should_stop)

        summary.completed_at = self._clock()
        log = logger.warning if summary.aborted else logger.info
        log("analytics_refresh.completed", **summary.as_dict())
        return summary

    async def refresh_item_correlations(
        self,
        item_id: uuid.UUID,
        window_days: int | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> RefreshSummary:
        """
        Recompute every pair of one item, e.g. after its consumption was imported.

        Partners are the items that share its category or whose consumption
        window overlaps its own, plus every partner it already has a stored
        row with.
        """
        window_days = window_days or self.settings.correlation_window_days
        await self.store.require_item(item_id)
        now = self._clock()
        today = now.date()
        start = today - timedelta(days=window_days)
        summary = RefreshSummary(scope="item", started_at=now)

        windows = await self.store.activity_windows(start, today)
        pairs = candidate_pairs_for_item(item_id, windows)
        for corr in await self.store.list_active_correlations(item_id):
            pairs.add((corr.item_low_id, corr.item_high_id))

        logger.info("item_correlations.started", item_id=str(item_id), pairs=len(pairs))
        await self._refresh_pairs(summary, sorted(pairs), start, today, should_stop)

        summary.completed_at = self._clock()
        log = logger.warning if summary.aborted else logger.info
        log("item_correlations.completed", item_id=str(item_id), **summary.as_dict())
        return summary

    async def _refresh_pairs(
        self,
        summary: RefreshSummary,
        pairs: list[tuple[uuid.UUID, uuid.UUID]],
        start: date,
        today: date,
        should_stop: Callable[[], bool] | None,
    ) -> None:
        pair_items = {item_id for pair in pairs for item_id in pair}
        records_by_item = await self.store.fetch_records_for_items(pair_items, start, today)

        for low, high in pairs:
            if should_stop is not None and should_stop():
                summary.aborted = True
                break
            outcome = await self._run_unit(
                summary,
                f"pair:{low}:{high}",
                lambda a=low, b=high: self._refresh_planned_pair(a, b, records_by_item),
            )
            self._count_pair(summary, outcome)

    async def _refresh_planned_pair(
        self,
        low: uuid.UUID,
        high: uuid.UUID,
        records_by_item: dict[uuid.UUID, list[Any]],
    ) -> CorrelationResult | CorrelationSkip:
        item_low = await self.store.fetch_item(low)
        item_high = await self.store.fetch_item(high)
        inactive = _inactive_pair(low, high, item_low, item_high)
        if inactive is not None:
            return inactive
        return await self._store_correlation(
            item_low,
            records_by_item.get(low, []),
            item_high,
            records_by_item.get(high, []),
        )

    @staticmethod
    def _count_pair(summary: RefreshSummary, outcome: CorrelationResult | CorrelationSkip | None) -> None:
        if outcome is None:
            return
        if isinstance(outcome, CorrelationResult):
            summary.correlations_updated += 1
        elif outcome.reason is SkipReason.INSUFFICIENT_DATA:
            summary.correlations_insufficient_data += 1
        elif outcome.reason is SkipReason.UNDEFINED_VARIANCE:
            summary.correlations_undefined_variance += 1
        elif outcome.reason is SkipReason.ITEM_NOT_FOUND:
            summary.correlations_not_found += 1

    async def _run_unit(self, summary: RefreshSummary, key: str, unit: Callable[[], Awaitable[Any]]) -> Any:
        """Run one unit in a SAVEPOINT and commit it; failures are recorded, not raised."""
        try:
            async with self.db.begin_nested():
                outcome = await unit()
        except Exception as exc:
            summary.failures[key] = str(exc)
            logger.error("analytics_refresh.unit_failed", unit=key, error=str(exc))
            return None

        try:
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            summary.failures[key] = str(exc)
            logger.error("analytics_refresh.commit_failed", unit=key, error=str(exc))
            return None
        return outcome

    # ── Recommendations ───────────────────────────────────────────────

    async def get_recommendations(self, item_id: uuid.UUID, limit: int | None = None) -> list[CorrelatedItem]:
        """Items most frequently consumed together with item_id, strongest first."""
        limit = self.settings.recommendation_default_limit if limit is None else limit
        await self.store.require_item(item_id)
        if limit <= 0:
            return []

        correlations = await self.store.list_active_correlations(item_id)
        ranked = rank_correlations(
            correlations,
            item_id,
            self.thresholds.significance_threshold,
            limit=len(correlations),
        )

        recommended = []
        for rec in ranked:
            counterpart = await self.store.fetch_item(rec.item_id)
            if counterpart is None or not counterpart.is_active:
                continue
            recommended.append(
                CorrelatedItem(
                    item_id=rec.item_id,
                    name=counterpart.name,
                    coefficient=rec.coefficient,
                    correlation_type=rec.correlation_type,
                    last_calculated=rec.last_calculated,
                    current_quantity=counterpart.current_quantity,
                    reorder_level=counterpart.reorder_level,
                    needs_reorder=counterpart.needs_reorder(),
                )
            )
            if len(recommended) >= limit:
                break
        return recommended

    # ── Lifecycle hooks ───────────────────────────────────────────────

    async def on_item_deleted(self, item_id: uuid.UUID) -> int:
        """Deactivate every correlation that references a removed item."""
        deactivated = await self.store.deactivate_correlations_for_item(item_id)
        logger.info("correlation.deactivated", item_id=str(item_id), count=deactivated)
        return deactivated

    # ── Read-only statistics ──────────────────────────────────────────

    async def summarize_item(self, item_id: uuid.UUID, days: int | None = None) -> ItemStatistics:
        """Profile, descriptive summary and abnormal days, without persisting anything."""
        days = days or self.settings.profile_window_days
        item = await self.store.require_item(item_id)
        today = self._clock().date()
        records = await self.store.fetch_consumption_records(item_id, today - timedelta(days=days), today)

        profile = compute_profile(records, item.current_quantity, today, self.thresholds, days, item_id)
        return ItemStatistics(
            item_id=item_id,
            name=item.name,
            profile=profile,
            summary=summarize_consumption(records, days),
            abnormal_dates=[r.consumption_date for r in abnormal_days(records, profile.mean, self.thresholds)],
        )

    async def category_statistics(self, category_id: uuid.UUID, days: int | None = None) -> CategoryStatistics:
        days = days or self.settings.profile_window_days
        if await self.db.get(Category, category_id) is None:
            raise CategoryNotFoundError(category_id)
        today = self._clock().date()

        items = await self.store.list_active_items(category_id)
        records_by_item = await self.store.fetch_records_for_items(
            [item.item_id for item in items],
            today - timedelta(days=days),
            today,
        )
        return compute_category_statistics(records_by_item, self.thresholds, days)

    async def correlation_statistics(self) -> CorrelationStatistics:
        correlations = await self.store.list_correlations(active_only=True)
        coefficients = [c.correlation_coefficient for c in correlations]
        by_type = Counter(c.correlation_type for c in correlations)
        stamps = [c.last_calculated for c in correlations if c.last_calculated is not None]

        return CorrelationStatistics(
            total_correlations=len(correlations),
            average_coefficient=round(sum(coefficients) / len(coefficients), 4) if coefficients else None,
            max_coefficient=max(coefficients) if coefficients else None,
            min_coefficient=min(coefficients) if coefficients else None,
            strong_positive_count=by_type.get(CorrelationType.STRONG_POSITIVE.value, 0),
            strong_negative_count=by_type.get(CorrelationType.STRONG_NEGATIVE.value, 0),
            significant_count=sum(
                1 for c in coefficients if is_significant(c, self.thresholds.significance_threshold)
            ),
            by_type=dict(by_type),
            last_calculated=max(stamps) if stamps else None,
        )
