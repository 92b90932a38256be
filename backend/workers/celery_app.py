"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stockpulse",
    broker=settings.redis_url,
    backend=settings.redis_url,
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
        "workers.scheduler.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Fans out across connected shops via workers.scheduler.dispatch_active_shops.
    # Daily/weekly batches ride on the same cycle: the cadence scheduler
    # decides per shop whether this tick falls inside its send window.
    beat_schedule={
        "shop-cycle-2m": {
            "task": "workers.scheduler.dispatch_active_shops",
            "schedule": crontab(minute="*/2"),
            "kwargs": {"task_name": "workers.sync.run_shop_cycle"},
            "options": {"queue": "sync"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
