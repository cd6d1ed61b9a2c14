"""Celery application configuration.

Uses Redis as broker when configured, falls back to memory:// for local dev/tests.
"""

from celery import Celery
from celery.schedules import crontab

from feedsync.config.settings import get_settings

settings = get_settings()

app = Celery(
    "feedsync",
    include=["feedsync.tasks.sync_tasks", "feedsync.tasks.maintenance_tasks"],
)

app.conf.update(
    broker_url=settings.effective_celery_broker,
    result_backend=settings.effective_celery_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "sync-pending-shops": {
            "task": "feedsync.tasks.sync_tasks.sync_pending_shops",
            "schedule": crontab(minute=f"*/{settings.batch_sync_interval_minutes}"),
        },
        "reap-expired-leases": {
            "task": "feedsync.tasks.maintenance_tasks.reap_expired_leases",
            "schedule": crontab(),  # Every minute
        },
        "prune-sync-runs": {
            "task": "feedsync.tasks.maintenance_tasks.prune_sync_runs",
            "schedule": crontab(minute=30, hour=3),  # Daily
        },
    },
)

app.autodiscover_tasks(["feedsync.tasks"])
