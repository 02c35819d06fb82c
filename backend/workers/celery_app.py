"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stockwatch",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.sync", "workers.digest"],
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
        "workers.sync.*": {"queue": "sync"},
        "workers.digest.*": {"queue": "notifications"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Inventory Sync ─────────────────────────────────────────
        "sync-inventory-daily": {
            "task": "workers.sync.run_inventory_sync",
            "schedule": crontab(hour=settings.sync_hour, minute=settings.sync_minute),
            "options": {"queue": "sync"},
        },
        # ── Digests ────────────────────────────────────────────────
        "send-digests-daily": {
            "task": "workers.digest.send_daily_digests",
            "schedule": crontab(hour=settings.digest_hour, minute=settings.digest_minute),
            "options": {"queue": "notifications"},
        },
        "send-digests-weekly": {
            "task": "workers.digest.send_weekly_digests",
            "schedule": crontab(hour=settings.digest_hour, minute=settings.digest_minute, day_of_week="monday"),
            "options": {"queue": "notifications"},
        },
    },
)
