"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stocksense",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.analytics"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.analytics.*": {"queue": "analytics"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # Incremental: only profiles / pairs past the staleness cutoff or dirtied by imports
        "refresh-stale-analytics-hourly": {
            "task": "workers.analytics.refresh_analytics",
            "schedule": crontab(minute=15),
            "kwargs": {"scope": "stale"},
            "options": {"queue": "analytics"},
        },
        # Full recompute of every active item and every candidate pair
        "refresh-all-analytics-nightly": {
            "task": "workers.analytics.refresh_analytics",
            "schedule": crontab(hour=2, minute=0),
            "kwargs": {"scope": "all"},
            "options": {"queue": "analytics"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
