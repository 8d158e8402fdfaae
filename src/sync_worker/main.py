"""Celery application for sync worker."""

from celery import Celery
from celery.schedules import crontab

from commerce_sync.config import get_settings
from commerce_sync.logging import configure_logging

settings = get_settings()
configure_logging()

# Create Celery app
app = Celery(
    "sync_worker",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
    include=[
        "sync_worker.tasks.sync_stores",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.sync_lock_ttl_seconds,
    task_soft_time_limit=max(settings.sync_lock_ttl_seconds - 60, 60),
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="sync",
    task_routes={
        "sync_worker.tasks.*": {"queue": "sync"},
    },
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    # Sync every store; overlapping ticks are skipped by the exclusive-run lock
    "sync-stores": {
        "task": "sync_worker.tasks.sync_stores.run_scheduled_sync",
        "schedule": crontab(minute=f"*/{settings.sync_interval_minutes}"),
    },
}


def run() -> None:
    """Run the Celery worker."""
    app.worker_main(["worker", "--loglevel=info", "-Q", "sync"])


if __name__ == "__main__":
    run()
