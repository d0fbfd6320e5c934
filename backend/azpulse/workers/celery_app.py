"""Celery application configuration."""

import sentry_sdk
from celery import Celery
from celery.schedules import crontab
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from azpulse.core.config import settings

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[CeleryIntegration(), SqlalchemyIntegration()],
        send_default_pii=False,
    )

# Create Celery application
celery_app = Celery(
    "azpulse",
    broker=str(settings.REDIS_URL),
    backend=str(settings.REDIS_URL),
    include=["azpulse.workers.tasks"],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.SYNC_TASK_TIME_LIMIT_SECONDS,
    task_soft_time_limit=settings.SYNC_TASK_SOFT_TIME_LIMIT_SECONDS,
    worker_prefetch_multiplier=1,  # Fetch one task at a time
    worker_max_tasks_per_child=50,
    worker_concurrency=settings.SYNC_MAX_CONCURRENCY,
    result_expires=86400,
    beat_schedule_filename="/tmp/azpulse-celerybeat-schedule",
)


# Celery Beat schedule
# The dispatcher enqueues each (tenant, kind) whose interval has elapsed
celery_app.conf.beat_schedule = {
    "dispatch-due-syncs": {
        "task": "azpulse.workers.tasks.dispatch_due_syncs",
        "schedule": crontab(),  # Every minute
    },
    "fail-stale-sync-logs": {
        "task": "azpulse.workers.tasks.fail_stale_sync_logs",
        "schedule": crontab(minute="*/5"),
    },
    "run-derived-analytics": {
        "task": "azpulse.workers.tasks.run_derived_analytics",
        "schedule": crontab(minute=30),  # Every hour at minute 30
    },
}

if __name__ == "__main__":
    celery_app.start()
