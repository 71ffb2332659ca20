"""Celery application configuration for SMS Bridge Worker."""

import os

from celery import Celery
from celery.schedules import crontab

# Celery configuration from environment
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/2")

app = Celery(
    "smsbridge_worker",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=[
        "smsbridge_worker.tasks.queue",
        "smsbridge_worker.tasks.decisions",
    ],
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Time limits (seconds)
    task_soft_time_limit=120,
    task_time_limit=300,
    # Retry settings
    task_default_retry_delay=60,  # 1 minute
    task_max_retries=3,
    # Queue routing
    task_routes={
        "queue.*": {"queue": "maintenance"},
        "decisions.*": {"queue": "maintenance"},
    },
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    # Return jobs whose worker died to the queue
    "reap-stuck-jobs-periodic": {
        "task": "queue.reap_stuck_jobs",
        "schedule": 60.0,  # 1 minute
        "args": (),
    },
    # Close reply windows that have passed
    "expire-decisions-periodic": {
        "task": "decisions.expire_pending",
        "schedule": 600.0,  # 10 minutes
        "args": (),
    },
    # Daily finished-job cleanup at 2 AM UTC
    "daily-job-cleanup": {
        "task": "queue.cleanup_finished_jobs",
        "schedule": crontab(hour=2, minute=0),
        "args": (),
    },
}


if __name__ == "__main__":
    app.start()
