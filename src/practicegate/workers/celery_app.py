"""Celery application configuration."""

from celery import Celery

from practicegate.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "practicegate",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "practicegate.workers.export_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,
    task_soft_time_limit=840,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_routes={
        "practicegate.exports.*": {"queue": "exports"},
    },
)

celery_app.conf.beat_schedule = {
    "redispatch-queued-exports": {
        "task": "practicegate.exports.redispatch_queued",
        "schedule": 300.0,
        "options": {"queue": "exports"},
    },
}
