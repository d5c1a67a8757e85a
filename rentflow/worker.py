"""Celery worker configuration.

Periodic maintenance only: removing expired resumption records.
"""

from celery import Celery
from celery.schedules import crontab

from rentflow.config import settings

celery_app = Celery(
    "rentflow_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["rentflow.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=240,

    worker_prefetch_multiplier=1,

    result_expires=3600,

    task_default_retry_delay=60,
    task_max_retries=3,

    beat_schedule={
        # Expired transition intents and identity snapshots, hourly
        "purge-expired-pending-records": {
            "task": "rentflow.tasks.purge_expired_pending_records",
            "schedule": crontab(minute=0),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
