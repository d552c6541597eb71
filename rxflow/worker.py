"""rxflow — Celery worker configuration."""
from celery import Celery

from rxflow.config import get_settings

settings = get_settings()

celery_app = Celery(
    "rxflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_retry_delay=60,
    task_max_retries=3,
    task_routes={
        "rxflow.tasks.*": {"queue": "default"},
    },
    include=[
        "rxflow.tasks.notification_tasks",
        "rxflow.tasks.maintenance_tasks",
    ],
)

# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "sweep-orphan-orders": {
        "task": "rxflow.tasks.maintenance_tasks.sweep_orphan_orders",
        "schedule": settings.ORPHAN_SWEEP_INTERVAL_SECONDS,
    },
}
