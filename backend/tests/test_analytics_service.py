"""
Tests for ConsumptionAnalyticsService against the seeded ledger.

Seeded pairs (see conftest.seeded_db), 15 in total:
  - coffee / sugar / tea correlate perfectly (±1.0)
  - sponge and gloves correlate with the pantry items
  - bleach is constant → undefined variance with everything
  - sponge / gloves share only two dates → insufficient data
"""

import uuid
from datetime import datetime, time, timedelta

import pytest
from sqlalchemy import func, select

from analytics.correlation import CorrelationResult, CorrelationSkip, CorrelationType
from analytics.errors import CategoryNotFoundError, ItemNotFoundError, SkipReason
from analytics.profiler import VolatilityClass
from analytics.service import ConsumptionAnalyticsService
from analytics.staleness import RefreshScope
from core.config import AnalyticsThresholds, Settings
from db.models import Item, ItemCorrelation


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock(seeded_db):
    return FakeClock(datetime.combine(seeded_db.today, time(12, 0)))


@pytest.fixture
def service(test_db, clock):
    return ConsumptionAnalyticsService(
        test_db,
        thresholds=AnalyticsThresholds(),
        settings=Settings(),
        clock=clock,
    )


async def _correlation_rows(db) -> int:
    result = await db.execute(select(func.count()).select_from(ItemCorrelation))
    return result.scalar_one()


# ── refresh_profile ────────────────────────────────────────────────────


class TestRefreshProfile:
    @pytest.mark.asyncio
    async def test_profile_persisted_on_item(self, service, seeded_db, clock):
        profile = await service.refresh_profile(seeded_db.coffee.item_id)

        assert profile.coverage_days == 4
        assert profile.volatility == VolatilityClass.LOW

        item = seeded_db.coffee
        assert item.avg_daily_consumption == pytest.approx(73 / 7)
        assert item.coverage_days == 4
        assert item.expected_stockout_date == seeded_db.today + timedelta(days=4)
        assert item.volatility_classification == "LOW"
        assert item.is_highly_volatile is False
        assert item.last_statistics_update == clock.now

    @pytest.mark.asyncio
    async def test_insufficient_data_clears_statistics(self, service, seeded_db):
        """One record → insufficient; no stale stockout date survives."""
        sponge = seeded_db.sponge
        sponge.expected_stockout_date = seeded_db.today
        sponge.coverage_days = 3

        profile = await service.refresh_profile(sponge.item_id)

        assert not profile.sufficient_data
        assert sponge.avg_daily_consumption is None
        assert sponge.volatility_classification is None
        assert sponge.coverage_days is None
        assert sponge.expected_stockout_date is None
        assert sponge.last_statistics_update is not None

    @pytest.mark.asyncio
    async def test_window_limits_records(self, service, seeded_db):
        """A one-day window covers yesterday and today (inclusive)."""
        profile = await service.refresh_profile(seeded_db.coffee.item_id, window_days=1)
        assert profile.data_points == 2
        assert profile.mean == pytest.approx(10.5)

    @pytest.mark.asyncio
    async def test_unknown_item(self, service, seeded_db):
        with pytest.raises(ItemNotFoundError):
            await service.refresh_profile(uuid.uuid4())


# ── refresh_correlation ────────────────────────────────────────────────


class TestRefreshCorrelation:
    @pytest.mark.asyncio
    async def test_identical_pattern_is_strong_positive(self, service, seeded_db, test_db):
        result = await service.refresh_correlation(seeded_db.coffee.item_id, seeded_db.sugar.item_id)

        assert isinstance(result, CorrelationResult)
        assert result.coefficient == 1.0
        assert result.correlation_type == CorrelationType.STRONG_POSITIVE

        row = await service.store.fetch_correlation(seeded_db.sugar.item_id, seeded_db.coffee.item_id)
        assert row.correlation_coefficient == 1.0
        assert row.category_id == seeded_db.pantry.category_id

    @pytest.mark.asyncio
    async def test_symmetric_and_single_row(self, service, seeded_db, test_db):
        forward = await service.refresh_correlation(seeded_db.coffee.item_id, seeded_db.tea.item_id)
        backward = await service.refresh_correlation(seeded_db.tea.item_id, seeded_db.coffee.item_id)

        assert forward == backward
        assert forward.coefficient == -1.0
        assert forward.correlation_type == CorrelationType.STRONG_NEGATIVE
        assert await _correlation_rows(test_db) == 1

    @pytest.mark.asyncio
    async def test_constant_series_never_stored(self, service, seeded_db, test_db):
        result = await service.refresh_correlation(seeded_db.coffee.item_id, seeded_db.bleach.item_id)

        assert isinstance(result, CorrelationSkip)
        assert result.reason == SkipReason.UNDEFINED_VARIANCE
        assert await _correlation_rows(test_db) == 0

    @pytest.mark.asyncio
    async def test_sparse_pair_is_insufficient(self, service, seeded_db, test_db):
        result = await service.refresh_correlation(seeded_db.sponge.item_id, seeded_db.gloves.item_id)

        assert isinstance(result, CorrelationSkip)
        assert result.reason == SkipReason.INSUFFICIENT_DATA
        assert result.data_points == 2
        assert await _correlation_rows(test_db) == 0

    @pytest.mark.asyncio
    async def test_cross_category_pair_has_no_category(self, service, seeded_db):
        await service.refresh_correlation(seeded_db.coffee.item_id, seeded_db.gloves.item_id)
        row = await service.store.fetch_correlation(seeded_db.coffee.item_id, seeded_db.gloves.item_id)
        assert row.category_id is None

    @pytest.mark.asyncio
    async def test_unknown_item(self, service, seeded_db):
        with pytest.raises(ItemNotFoundError):
            await service.refresh_correlation(seeded_db.coffee.item_id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_deleted_item_pair_stays_inactive(self, service, seeded_db, test_db):
        """Recomputing a pair after its item was removed writes nothing."""
        await service.refresh_correlation(seeded_db.coffee.item_id, seeded_db.sugar.item_id)
        seeded_db.coffee.is_active = False
        await test_db.flush()
        assert await service.on_item_deleted(seeded_db.coffee.item_id) == 1

        result = await service.refresh_correlation(seeded_db.sugar.item_id, seeded_db.coffee.item_id)

        assert isinstance(result, CorrelationSkip)
        assert result.reason == SkipReason.ITEM_NOT_FOUND
        row = await service.store.fetch_correlation(seeded_db.coffee.item_id, seeded_db.sugar.item_id)
        assert row.is_active is False
        assert await service.store.list_active_correlations(seeded_db.sugar.item_id) == []

    @pytest.mark.asyncio
    async def test_full_pass_leaves_deleted_pairs_inactive(self, service, seeded_db, test_db):
        await service.refresh_all(RefreshScope.ALL)
        seeded_db.coffee.is_active = False
        await test_db.flush()
        await service.on_item_deleted(seeded_db.coffee.item_id)

        summary = await service.refresh_all(RefreshScope.ALL)

        # sugar/tea, sponge and gloves with sugar and tea
        assert summary.correlations_updated == 5
        active = await service.store.list_correlations(active_only=True)
        assert len(active) == 5
        assert all(seeded_db.coffee.item_id not in (c.item_low_id, c.item_high_id) for c in active)


# ── refresh_all ────────────────────────────────────────────────────────


class TestRefreshAll:
    @pytest.mark.asyncio
    async def test_full_pass_counts(self, service, seeded_db, test_db):
        summary = await service.refresh_all(RefreshScope.ALL)

        assert summary.profiles_updated == 5
        assert summary.profiles_insufficient_data == 1
        assert summary.correlations_updated == 9
        assert summary.correlations_undefined_variance == 5
        assert summary.correlations_insufficient_data == 1
        assert summary.correlations_not_found == 0
        assert summary.failures == {}
        assert summary.aborted is False
        assert summary.skipped == 7
        assert await _correlation_rows(test_db) == 9

    @pytest.mark.asyncio
    async def test_repeat_full_pass_is_idempotent(self, service, seeded_db, test_db):
        await service.refresh_all(RefreshScope.ALL)
        await service.refresh_all(RefreshScope.ALL)
        assert await _correlation_rows(test_db) == 9

    @pytest.mark.asyncio
    async def test_stale_pass_only_touches_dirty_pairs(self, service, seeded_db, clock):
        await service.refresh_all(RefreshScope.ALL)

        clock.advance(hours=1)
        nothing_new = await service.refresh_all(RefreshScope.STALE)
        assert nothing_new.profiles_updated == 0
        assert nothing_new.correlations_updated == 0
        # pairs without a stored row are always due
        assert nothing_new.correlations_undefined_variance == 5
        assert nothing_new.correlations_insufficient_data == 1

        await service.store.record_consumption(
            seeded_db.coffee.item_id, seeded_db.today, consumed_quantity=11.0, opening_quantity=100.0, now=clock.now
        )
        clock.advance(minutes=5)
        after_import = await service.refresh_all(RefreshScope.STALE)

        # coffee's stored pairs: sugar, tea, sponge, gloves
        assert after_import.correlations_updated == 4
        assert after_import.profiles_updated == 0

    @pytest.mark.asyncio
    async def test_cutoff_elapsed_refreshes_everything(self, service, seeded_db, clock):
        await service.refresh_all(RefreshScope.ALL)
        clock.advance(hours=25)

        summary = await service.refresh_all(RefreshScope.STALE)
        assert summary.profiles_updated == 5
        assert summary.correlations_updated == 9

    @pytest.mark.asyncio
    async def test_category_scope(self, service, seeded_db):
        summary = await service.refresh_all(RefreshScope.CATEGORY, category_id=seeded_db.cleaning.category_id)

        assert summary.profiles_updated == 2
        assert summary.profiles_insufficient_data == 1
        assert summary.correlations_updated == 0
        assert summary.correlations_undefined_variance == 2
        assert summary.correlations_insufficient_data == 1

    @pytest.mark.asyncio
    async def test_category_scope_requires_category(self, service, seeded_db):
        with pytest.raises(ValueError):
            await service.refresh_all(RefreshScope.CATEGORY)

    @pytest.mark.asyncio
    async def test_should_stop_between_units(self, service, seeded_db, test_db):
        """Two units finish and stay committed, then the pass stops."""
        polls = {"n": 0}

        def _stop_after_two():
            polls["n"] += 1
            return polls["n"] > 2

        summary = await service.refresh_all(RefreshScope.ALL, should_stop=_stop_after_two)

        assert summary.aborted is True
        assert summary.profiles_updated + summary.profiles_insufficient_data == 2
        assert summary.correlations_updated == 0
        result = await test_db.execute(
            select(func.count()).select_from(Item).where(Item.last_statistics_update.is_not(None))
        )
        assert result.scalar_one() == 2

    @pytest.mark.asyncio
    async def test_failing_unit_does_not_stop_batch(self, service, seeded_db, monkeypatch):
        bleach_id = seeded_db.bleach.item_id
        original = service.refresh_profile

        async def _flaky(item_id, window_days=None):
            if item_id == bleach_id:
                raise RuntimeError("boom")
            return await original(item_id, window_days)

        monkeypatch.setattr(service, "refresh_profile", _flaky)
        summary = await service.refresh_all(RefreshScope.ALL)

        assert summary.failures == {f"profile:{bleach_id}": "boom"}
        assert summary.profiles_updated == 4
        assert summary.profiles_insufficient_data == 1
        assert summary.correlations_updated == 9

    @pytest.mark.asyncio
    async def test_summary_as_dict(self, service, seeded_db):
        data = (await service.refresh_all(RefreshScope.ALL)).as_dict()
        assert data["scope"] == "all"
        assert data["skipped"] == 7
        assert isinstance(data["started_at"], str)

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_and_batch_continues(self, service, seeded_db, test_db, monkeypatch):
        session = _FirstCommitFails(test_db)
        monkeypatch.setattr(service, "db", session)

        summary = await service.refresh_all(RefreshScope.ALL)

        assert session.rollbacks == 1
        assert len(summary.failures) == 1
        [key] = summary.failures
        assert key.startswith("profile:")
        assert summary.failures[key] == "commit failed"
        assert summary.profiles_updated + summary.profiles_insufficient_data == 5
        assert summary.correlations_updated == 9


class _FirstCommitFails:
    """Session stand-in whose first commit raises; everything else is the real session."""

    def __init__(self, session):
        self._session = session
        self.commits = 0
        self.rollbacks = 0

    def __getattr__(self, name):
        return getattr(self._session, name)

    async def commit(self):
        self.commits += 1
        if self.commits == 1:
            raise RuntimeError("commit failed")
        await self._session.commit()

    async def rollback(self):
        self.rollbacks += 1
        await self._session.rollback()


# ── Per-item correlation refresh ───────────────────────────────────────


class TestRefreshItemCorrelations:
    @pytest.mark.asyncio
    async def test_item_against_every_partner(self, service, seeded_db, test_db):
        """coffee overlaps all five other items; bleach is constant."""
        summary = await service.refresh_item_correlations(seeded_db.coffee.item_id)

        assert summary.scope == "item"
        assert summary.correlations_updated == 4
        assert summary.correlations_undefined_variance == 1
        assert summary.correlations_insufficient_data == 0
        assert summary.profiles_updated == 0
        assert summary.failures == {}
        assert await _correlation_rows(test_db) == 4
        assert len(await service.store.list_active_correlations(seeded_db.coffee.item_id)) == 4

    @pytest.mark.asyncio
    async def test_sparse_partner_counted_as_insufficient(self, service, seeded_db):
        summary = await service.refresh_item_correlations(seeded_db.gloves.item_id)

        assert summary.correlations_updated == 3
        assert summary.correlations_insufficient_data == 1
        assert summary.correlations_undefined_variance == 1

    @pytest.mark.asyncio
    async def test_deleted_partner_not_revived(self, service, seeded_db, test_db):
        await service.refresh_all(RefreshScope.ALL)
        seeded_db.tea.is_active = False
        await test_db.flush()
        await service.on_item_deleted(seeded_db.tea.item_id)

        summary = await service.refresh_item_correlations(seeded_db.coffee.item_id)

        assert summary.correlations_updated == 3
        row = await service.store.fetch_correlation(seeded_db.coffee.item_id, seeded_db.tea.item_id)
        assert row.is_active is False

    @pytest.mark.asyncio
    async def test_should_stop(self, service, seeded_db):
        summary = await service.refresh_item_correlations(seeded_db.coffee.item_id, should_stop=lambda: True)
        assert summary.aborted is True
        assert summary.correlations_updated == 0

    @pytest.mark.asyncio
    async def test_unknown_item(self, service, seeded_db):
        with pytest.raises(ItemNotFoundError):
            await service.refresh_item_correlations(uuid.uuid4())


# ── Recommendations & lifecycle ────────────────────────────────────────


class TestRecommendations:
    @pytest.mark.asyncio
    async def test_strongest_first_with_stock_position(self, service, seeded_db):
        await service.refresh_all(RefreshScope.ALL)

        recs = await service.get_recommendations(seeded_db.coffee.item_id, limit=2)

        assert {r.item_id for r in recs} == {seeded_db.sugar.item_id, seeded_db.tea.item_id}
        assert all(abs(r.coefficient) == 1.0 for r in recs)
        sugar = next(r for r in recs if r.item_id == seeded_db.sugar.item_id)
        assert sugar.name == "Sugar Sachets"
        assert sugar.needs_reorder is True
        assert sugar.reorder_level == 40.0

    @pytest.mark.asyncio
    async def test_weak_pairs_excluded(self, service, seeded_db):
        """coffee/gloves is a weak correlation and falls under the 0.4 threshold."""
        await service.refresh_all(RefreshScope.ALL)

        recs = await service.get_recommendations(seeded_db.coffee.item_id, limit=10)

        assert [r.item_id for r in recs][-1] == seeded_db.sponge.item_id
        assert seeded_db.gloves.item_id not in {r.item_id for r in recs}
        assert len(recs) == 3

    @pytest.mark.asyncio
    async def test_inactive_counterpart_skipped(self, service, seeded_db, test_db):
        await service.refresh_all(RefreshScope.ALL)
        seeded_db.tea.is_active = False
        await test_db.flush()

        recs = await service.get_recommendations(seeded_db.coffee.item_id, limit=2)
        assert [r.item_id for r in recs] == [seeded_db.sugar.item_id, seeded_db.sponge.item_id]

    @pytest.mark.asyncio
    async def test_no_correlations(self, service, seeded_db):
        assert await service.get_recommendations(seeded_db.bleach.item_id) == []

    @pytest.mark.asyncio
    async def test_unknown_item(self, service, seeded_db):
        with pytest.raises(ItemNotFoundError):
            await service.get_recommendations(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_deleted_item_drops_out(self, service, seeded_db):
        await service.refresh_all(RefreshScope.ALL)

        assert await service.on_item_deleted(seeded_db.coffee.item_id) == 4

        recs = await service.get_recommendations(seeded_db.sugar.item_id, limit=10)
        assert seeded_db.coffee.item_id not in {r.item_id for r in recs}


# ── Read-only statistics ───────────────────────────────────────────────


class TestStatistics:
    @pytest.mark.asyncio
    async def test_summarize_item(self, service, seeded_db):
        stats = await service.summarize_item(seeded_db.coffee.item_id, days=30)

        assert stats.name == "Coffee Beans"
        assert stats.profile.coverage_days == 4
        assert stats.summary.total_records == 7
        assert stats.summary.median == 10.0
        assert stats.abnormal_dates == []
        # Read-only: nothing written back
        assert seeded_db.coffee.last_statistics_update is None

    @pytest.mark.asyncio
    async def test_category_statistics(self, service, seeded_db):
        stats = await service.category_statistics(seeded_db.pantry.category_id, days=30)

        assert stats.total_items == 3
        assert stats.total_records == 21
        assert stats.total_consumption == 286.0
        assert stats.top_consuming_items[0].item_id == seeded_db.sugar.item_id

    @pytest.mark.asyncio
    async def test_unknown_category(self, service, seeded_db):
        with pytest.raises(CategoryNotFoundError):
            await service.category_statistics(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_correlation_statistics(self, service, seeded_db):
        await service.refresh_all(RefreshScope.ALL)

        stats = await service.correlation_statistics()

        assert stats.total_correlations == 9
        assert stats.strong_positive_count == 1
        assert stats.strong_negative_count == 2
        assert stats.significant_count == 6
        assert stats.max_coefficient == 1.0
        assert stats.min_coefficient == -1.0
        assert sum(stats.by_type.values()) == 9

    @pytest.mark.asyncio
    async def test_correlation_statistics_empty(self, service, seeded_db):
        stats = await service.correlation_statistics()
        assert stats.total_correlations == 0
        assert stats.average_coefficient is None
