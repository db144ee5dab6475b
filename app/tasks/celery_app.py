"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from core.config import config

# Create Celery app
celery_app = Celery(
    "enrollment_engine",
    broker=config.REDIS_URL,
    backend=config.REDIS_URL,
    include=[
        "app.tasks.notification_tasks",
        "app.tasks.payment_tasks",
        "app.tasks.waitlist_tasks",
    ],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=4,
    worker_max_tasks_per_child=1000,
)

# Auto-discover tasks from app.tasks module
celery_app.autodiscover_tasks(["app.tasks"])

# Configure periodic tasks (Celery Beat)
celery_app.conf.beat_schedule = {
    # Charge due installments and retries whose backoff has elapsed (hourly)
    "process-due-installments": {
        "task": "process_due_installments",
        "schedule": crontab(minute=0),
    },
    # Offer seats left by lapsed waitlist claims (every 15 minutes)
    "process-expired-waitlist-claims": {
        "task": "process_expired_waitlist_claims",
        "schedule": crontab(minute="*/15"),
    },
}


if __name__ == "__main__":
    celery_app.start()
