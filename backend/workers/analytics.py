"""
Analytics Worker — scheduled profile and correlation refresh.

refresh_analytics runs one ConsumptionAnalyticsService.refresh_all pass.
Each profile / pair is committed as soon as it finishes, so revoking the
task with abort() stops it between units and keeps all finished work.
refresh_item_correlations is queued per item after a consumption import.

Schedule: hourly (scope=stale) and nightly (scope=all), see celery_app.
Queue: analytics
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import structlog
from celery.contrib.abortable import AbortableTask

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.analytics.refresh_analytics",
    base=AbortableTask,
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def refresh_analytics(self, scope: str = "stale", category_id: str | None = None, cutoff_hours: int | None = None):
    """
    Recompute stale (or all) item profiles and item-pair correlations.

    Args:
        scope: "all", "category" or "stale"
        category_id: required when scope is "category"
        cutoff_hours: staleness cutoff override (defaults to settings)
    """
    run_id = self.request.id or "manual"
    logger.info("analytics_refresh.task_started", scope=scope, category_id=category_id, run_id=run_id)

    def _should_stop() -> bool:
        # Direct / eager calls have no task id and nothing to poll
        return bool(self.request.id) and self.is_aborted()

    async def _refresh():
        from analytics.service import ConsumptionAnalyticsService
        from analytics.staleness import RefreshScope
        from core.config import get_settings
        from db.session import build_session_factory

        settings = get_settings()
        engine, async_session = build_session_factory(settings.database_url)
        try:
            async with async_session() as db:
                service = ConsumptionAnalyticsService(db, settings=settings)
                summary = await service.refresh_all(
                    RefreshScope(scope),
                    category_id=uuid.UUID(category_id) if category_id else None,
                    cutoff=timedelta(hours=cutoff_hours) if cutoff_hours is not None else None,
                    should_stop=_should_stop,
                )
                await db.commit()
        finally:
            await engine.dispose()

        return {
            "status": "aborted" if summary.aborted else "success",
            "run_id": run_id,
            **summary.as_dict(),
            "finished_at": datetime.now(timezone.utc).isoformat(),
        }

    try:
        return asyncio.run(_refresh())
    except Exception as exc:
        logger.error("analytics_refresh.task_failed", scope=scope, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.analytics.refresh_item_profile",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def refresh_item_profile(self, item_id: str, window_days: int | None = None):
    """
    Recompute one item's profile, e.g. right after its consumption import.

    An unknown item is reported, not retried.
    """

    async def _refresh():
        from analytics.errors import ItemNotFoundError
        from analytics.service import ConsumptionAnalyticsService
        from core.config import get_settings
        from db.session import build_session_factory

        settings = get_settings()
        engine, async_session = build_session_factory(settings.database_url)
        try:
            async with async_session() as db:
                service = ConsumptionAnalyticsService(db, settings=settings)
                try:
                    profile = await service.refresh_profile(uuid.UUID(item_id), window_days)
                except ItemNotFoundError:
                    logger.warning("profile.item_not_found", item_id=item_id)
                    return {"status": "not_found", "item_id": item_id}
                await db.commit()
        finally:
            await engine.dispose()

        return {
            "status": "success" if profile.sufficient_data else "insufficient_data",
            "item_id": item_id,
            "data_points": profile.data_points,
            "volatility": profile.volatility.value if profile.volatility else None,
            "coverage_days": profile.coverage_days,
        }

    try:
        return asyncio.run(_refresh())
    except Exception as exc:
        logger.error("profile.task_failed", item_id=item_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.analytics.refresh_item_correlations",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def refresh_item_correlations(self, item_id: str, window_days: int | None = None):
    """
    Recompute one item's correlations against its candidate partners.

    Queued by ingestion once an item's consumption rows were recorded, so
    its pairs are fresh before the next scheduled pass.
    """

    async def _refresh():
        from analytics.errors import ItemNotFoundError
        from analytics.service import ConsumptionAnalyticsService
        from core.config import get_settings
        from db.session import build_session_factory

        settings = get_settings()
        engine, async_session = build_session_factory(settings.database_url)
        try:
            async with async_session() as db:
                service = ConsumptionAnalyticsService(db, settings=settings)
                try:
                    summary = await service.refresh_item_correlations(uuid.UUID(item_id), window_days)
                except ItemNotFoundError:
                    logger.warning("item_correlations.item_not_found", item_id=item_id)
                    return {"status": "not_found", "item_id": item_id}
                await db.commit()
        finally:
            await engine.dispose()

        return {"status": "success", "item_id": item_id, **summary.as_dict()}

    try:
        return asyncio.run(_refresh())
    except Exception as exc:
        logger.error("item_correlations.task_failed", item_id=item_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
