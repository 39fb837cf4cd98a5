"""Celery app bootstrap (AWS SQS broker)."""

from __future__ import annotations

from celery import Celery

from app.core.config import get_settings


settings = get_settings()

QUEUE_PREFIX = (settings.CELERY_QUEUE_PREFIX or "mediajobs-").strip()
# Celery SQS transport applies `queue_name_prefix` to queue names, so the
# logical queue "analysis" becomes the SQS queue "<prefix>analysis".
ANALYSIS_QUEUE = "analysis"
FIX_QUEUE = "fix"

celery_app = Celery(
    "mediajobs",
    broker=(settings.CELERY_BROKER_URL or "sqs://").strip(),
    include=["app.worker.tasks"],
)

transport_options: dict = {
    "region": (settings.AWS_REGION or "").strip(),
    "queue_name_prefix": QUEUE_PREFIX,
    # Redelivery budget: an unacked message reappears after this many seconds.
    "visibility_timeout": int(settings.CELERY_VISIBILITY_TIMEOUT),
    "polling_interval": float(settings.CELERY_POLLING_INTERVAL),
    "wait_time_seconds": int(settings.CELERY_WAIT_TIME_SECONDS),
}

predefined_queues = {}
for queue_name, queue_url in (
    (ANALYSIS_QUEUE, settings.SQS_ANALYSIS_QUEUE_URL),
    (FIX_QUEUE, settings.SQS_FIX_QUEUE_URL),
):
    if (queue_url or "").strip():
        predefined_queues[queue_name] = {"url": queue_url.strip()}
if predefined_queues:
    # Use predefined queue URLs so Celery uses exactly the queue URLs provided.
    transport_options["predefined_queues"] = predefined_queues

celery_app.conf.update(
    broker_transport_options=transport_options,
    task_default_queue=ANALYSIS_QUEUE,
    task_routes={
        "app.worker.tasks.run_analysis_job": {"queue": ANALYSIS_QUEUE},
        "app.worker.tasks.run_fix_job": {"queue": FIX_QUEUE},
    },
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_ignore_result=True,
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_always_eager=bool(settings.CELERY_TASK_ALWAYS_EAGER),
)

if settings.CELERY_TASK_TIME_LIMIT:
    celery_app.conf.task_time_limit = int(settings.CELERY_TASK_TIME_LIMIT)
if settings.CELERY_TASK_SOFT_TIME_LIMIT:
    celery_app.conf.task_soft_time_limit = int(settings.CELERY_TASK_SOFT_TIME_LIMIT)
