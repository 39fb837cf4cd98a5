"""Dispatch queue: at-least-once publishing of job messages to the worker fleet."""

from __future__ import annotations

import logging
from typing import Dict

from app.jobs.models import KIND_SPECS, QueueMessage

logger = logging.getLogger(__name__)

# One topic (Celery queue) per job family.
TOPIC_TASKS: Dict[str, str] = {
    "analysis": "app.worker.tasks.run_analysis_job",
    "fix": "app.worker.tasks.run_fix_job",
}


def topic_for(message: QueueMessage) -> str:
    return KIND_SPECS[message.kind].topic


class DispatchQueue:
    """
    Publishes to the broker and returns once the message is accepted.

    Delivery is at-least-once: consumers must tolerate duplicates and
    reordering. Only the job id and kind travel in the message; the worker
    reads everything else from the job store.
    """

    def __init__(self, celery_app=None):
        self._celery_app = celery_app

    @property
    def celery_app(self):
        if self._celery_app is None:
            from app.worker.celery_app import celery_app

            self._celery_app = celery_app
        return self._celery_app

    def publish(self, topic: str, message: QueueMessage) -> str:
        task_name = TOPIC_TASKS.get(topic)
        if not task_name:
            raise ValueError(f"Unknown topic: {topic}")
        async_result = self.celery_app.send_task(
            task_name,
            kwargs={"message": message.model_dump(mode="json")},
            queue=topic,
        )
        logger.info(f"Published job {message.job_id} to {topic} (task {async_result.id})")
        return async_result.id
