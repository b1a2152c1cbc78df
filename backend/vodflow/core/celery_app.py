"""Celery application configuration."""

from celery import Celery

from vodflow.core.config import settings

celery_app = Celery(
    "vodflow",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.PIPELINE_MAX_CONCURRENT_RUNS,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_transport_options={"visibility_timeout": settings.CELERY_VISIBILITY_TIMEOUT},
)

celery_app.autodiscover_tasks(["vodflow.modules.pipeline"])
