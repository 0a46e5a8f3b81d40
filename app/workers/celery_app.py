from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "screenline",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
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
)

celery_app.conf.beat_schedule = {
    "process-scheduled-calls": {
        "task": "scheduled_calls.process",
        "schedule": 60.0,
    },
    "reconcile-stuck-screenings": {
        "task": "reconciliation.stuck_screenings",
        "schedule": 120.0,
    },
    "supervise-bulk-operations": {
        "task": "bulk.supervise",
        "schedule": 60.0,
    },
}

celery_app.autodiscover_tasks([
    "app.workers.bulk_dispatch",
    "app.workers.scheduled_calls",
    "app.workers.completion",
    "app.workers.reconciliation",
])
