"""Worker pipeline: turns one queue delivery into at most one job execution.

Deliveries are at-least-once, so every step is guarded by a compare-and-swap
on the job record. A duplicate or late delivery either finds the job
terminal (and only settles credits that are still owed) or loses the claim.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Dict, Literal, Mapping, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from app.billing.ledger import CreditLedger
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    InsufficientCreditsException,
    NotFoundException,
    PermanentFailureError,
    StaleStateError,
    TransientUpstreamError,
)
from app.jobs.models import Job, JobKind, JobState, QueueMessage
from app.jobs.store import JobStore
from app.worker.operations import Operation, default_operations

logger = logging.getLogger(__name__)

Outcome = Literal["completed", "failed", "skipped"]


def _now() -> datetime:
    return datetime.utcnow()


class WorkerPipeline:
    def __init__(
        self,
        db: Database,
        operations: Optional[Mapping[JobKind, Operation]] = None,
        ledger: Optional[CreditLedger] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = JobStore(db)
        self.ledger = ledger or CreditLedger(db, self.settings)
        if operations is None:
            operations = default_operations()
        self.operations: Dict[JobKind, Operation] = dict(operations)
        self._sleep = sleep

    def handle(self, message: QueueMessage) -> Outcome:
        job_id = message.job_id
        try:
            job = self.store.get(job_id)
        except NotFoundException:
            logger.warning(f"Job {job_id} not found; dropping message")
            return "skipped"

        if job.state.is_terminal:
            self.settle(job)
            return "skipped"

        claimed = self._claim(job)
        if claimed is None:
            return "skipped"
        if claimed.state == JobState.FAILED:
            return "failed"

        return self._execute(claimed)

    def _claim(self, job: Job) -> Optional[Job]:
        """Take the processing lease, or return None if someone else holds it."""
        lease = int(self.settings.JOB_LEASE_SECONDS)
        max_claims = int(self.settings.JOB_MAX_CLAIMS)
        try:
            if job.state == JobState.PENDING:
                claimed = self.store.claim(job.job_id, lease)
            elif job.lease_expires_at is not None and job.lease_expires_at > _now():
                logger.info(f"Job {job.job_id} is leased by another worker until {job.lease_expires_at}")
                return None
            elif job.attempts < max_claims:
                claimed = self.store.reclaim(job.job_id, lease, max_claims)
                logger.warning(f"Reclaimed job {job.job_id} after expired lease (claim {claimed.attempts})")
            else:
                failed = self.store.abandon(
                    job.job_id, f"Job abandoned after {job.attempts} claims without finishing"
                )
                logger.error(f"Job {job.job_id} abandoned after {job.attempts} claims")
                return failed
        except StaleStateError as e:
            logger.debug(f"Lost claim race: {e}")
            return None

        logger.info(f"Job {claimed.job_id} processing (claim {claimed.attempts})")
        return claimed

    def _execute(self, job: Job) -> Outcome:
        operation = self.operations.get(job.kind)
        try:
            if operation is None:
                raise PermanentFailureError(f"No operation registered for {job.kind.value}")
            result = self._run_with_retry(operation, job)
        except PyMongoError:
            raise
        except Exception as e:
            return self._fail(job, e)

        try:
            done = self.store.transition(job.job_id, JobState.PROCESSING, JobState.COMPLETED, {"result": result})
        except StaleStateError as e:
            # Lease was lost mid-run; the current holder records the outcome.
            logger.debug(f"Discarding result for {job.job_id}: {e}")
            return "skipped"

        logger.info(f"Job {job.job_id} completed")
        self.settle(done)
        return "completed"

    def _run_with_retry(self, operation: Operation, job: Job) -> dict:
        max_attempts = max(1, int(self.settings.UPSTREAM_MAX_ATTEMPTS))
        backoff = float(self.settings.UPSTREAM_RETRY_BACKOFF_SECONDS)
        attempt = 1
        while True:
            try:
                return operation(job, self.store)
            except TransientUpstreamError as e:
                if attempt >= max_attempts:
                    raise
                logger.warning(f"Job {job.job_id} transient failure (attempt {attempt}/{max_attempts}): {e}")
                self._sleep(backoff * attempt)
                attempt += 1

    def _fail(self, job: Job, exc: Exception) -> Outcome:
        if isinstance(exc, (PermanentFailureError, TransientUpstreamError)):
            reason = str(exc)
        else:
            reason = f"{type(exc).__name__}: {exc}"
        try:
            self.store.transition(job.job_id, JobState.PROCESSING, JobState.FAILED, {"error": reason})
        except StaleStateError as e:
            logger.debug(f"Discarding failure for {job.job_id}: {e}")
            return "skipped"
        logger.error(f"Job {job.job_id} failed: {reason}")
        return "failed"

    def settle(self, job: Job) -> None:
        """Debit a completed billable job exactly once."""
        if job.state != JobState.COMPLETED or not job.billable:
            return
        if job.credits_charged or job.charge_skipped:
            return

        try:
            self.ledger.debit(job.owner_id, job.credit_cost, reference=job.job_id, type=job.kind.value)
        except InsufficientCreditsException:
            if self.store.mark_charge_skipped(job.job_id):
                logger.warning(f"Job {job.job_id} completed uncharged: user {job.owner_id} is out of credits")
            return

        if self.store.mark_charged(job.job_id):
            logger.info(f"Charged {job.credit_cost} credit(s) for job {job.job_id}")
