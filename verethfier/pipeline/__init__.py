"""Celery task queue configuration."""

from celery import Celery

from verethfier.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "verethfier",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["verethfier.pipeline.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,  # 30 min hard limit
    task_soft_time_limit=1500,
    worker_prefetch_multiplier=1,  # Fair scheduling
    worker_max_tasks_per_child=50,
    task_routes={
        "verethfier.pipeline.tasks.run_scheduled_reverification": {"queue": "reconciliation"},
        "verethfier.pipeline.tasks.reverify_user": {"queue": "reconciliation"},
        "verethfier.pipeline.tasks.reverify_rule": {"queue": "reconciliation"},
    },
    beat_schedule={
        "reconciliation-sweep": {
            "task": "verethfier.pipeline.tasks.run_scheduled_reverification",
            "schedule": settings.reconcile_interval_hours * 3600,
        },
    },
)
