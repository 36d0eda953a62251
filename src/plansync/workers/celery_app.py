"""Celery application configuration."""

from typing import Any

from celery import Celery
from celery.signals import worker_process_init

from plansync.core.config import get_settings
from plansync.core.logging import configure_logging

settings = get_settings()

RUN_RENEWAL_TASK = "plansync.billing.run_renewal"
RECONCILE_DOWNGRADES_TASK = "plansync.billing.reconcile_downgrades"

# Queue name -> consuming task
QUEUE_TASKS = {
    settings.renewal_queue: RUN_RENEWAL_TASK,
    settings.downgrade_queue: RECONCILE_DOWNGRADES_TASK,
}

celery_app = Celery(
    "plansync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "plansync.workers.billing_tasks",
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
    task_soft_time_limit=870,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_routes={
        RUN_RENEWAL_TASK: {"queue": settings.renewal_queue},
        RECONCILE_DOWNGRADES_TASK: {"queue": settings.downgrade_queue},
    },
)

celery_app.conf.beat_schedule = {
    "renew-due-subscriptions": {
        "task": RUN_RENEWAL_TASK,
        "schedule": settings.renewal_schedule_seconds,  # Weekly cold start, no cursor
        "options": {"queue": settings.renewal_queue},
    },
}


@worker_process_init.connect
def configure_worker_logging(**_kwargs: Any) -> None:
    configure_logging(
        json_logs=settings.is_production,
        log_level="DEBUG" if settings.debug else "INFO",
    )
