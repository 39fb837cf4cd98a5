"""Celery tasks (sync): one task per dispatch topic."""

from __future__ import annotations

import logging
from typing import Any, Dict

from pydantic import ValidationError

from app.core.database import get_db
from app.jobs.models import QueueMessage
from app.worker.celery_app import celery_app
from app.worker.pipeline import WorkerPipeline

logger = logging.getLogger(__name__)


def _handle(message: Dict[str, Any]) -> Dict[str, Any]:
    """
    Run one delivery through the pipeline.

    Returning acks the message. Infrastructure errors (e.g. Mongo down) are
    left to propagate so the message is redelivered.
    """
    try:
        envelope = QueueMessage.model_validate(message)
    except ValidationError as e:
        # A malformed message can never succeed; ack and drop it.
        logger.error(f"Dropping malformed job message: {e}")
        return {"ok": False, "error": "malformed_message"}

    outcome = WorkerPipeline(get_db()).handle(envelope)
    logger.info(f"Job {envelope.job_id} delivery finished: {outcome}")
    return {"ok": True, "job_id": envelope.job_id, "outcome": outcome}


@celery_app.task(name="app.worker.tasks.run_analysis_job", acks_late=True)
def run_analysis_job(message: Dict[str, Any]) -> Dict[str, Any]:
    return _handle(message)


@celery_app.task(name="app.worker.tasks.run_fix_job", acks_late=True)
def run_fix_job(message: Dict[str, Any]) -> Dict[str, Any]:
    return _handle(message)
