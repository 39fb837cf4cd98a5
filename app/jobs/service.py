"""Jobs service: submission (dedup + credit pre-check + enqueue) and polling."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from pymongo.database import Database

from app.billing.ledger import CreditLedger
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    BadRequestException,
    ForbiddenException,
    InsufficientCreditsException,
    NotFoundException,
    ServiceUnavailableException,
)
from app.jobs.addressing import canonical_fix_ids, content_address_stream, dedup_key, request_address
from app.jobs.dedup import DedupEngine, DedupOutcome, new_job_id
from app.jobs.dispatch import DispatchQueue, topic_for
from app.jobs.models import (
    ANALYSIS_KINDS,
    FIX_KINDS,
    FIX_SOURCE_KIND,
    KIND_SPECS,
    Job,
    JobKind,
    JobState,
    JobSubmitResponse,
    QueueMessage,
)
from app.jobs.security import validate_media_key
from app.jobs.store import JobStore

logger = logging.getLogger(__name__)

MAX_FIX_ID_CHARS = 64

ContentReader = Callable[[str], Iterable[bytes]]


def _now() -> datetime:
    return datetime.utcnow()


def _s3_reader(input_ref: str) -> Iterable[bytes]:
    from app.core.aws import S3Service

    return S3Service().iter_object_chunks(input_ref)


def _validate_fix_ids(fix_ids: List[str]) -> List[str]:
    ids = canonical_fix_ids(fix_ids)
    if not ids:
        raise BadRequestException("At least one fix id is required.")
    if any(len(i) > MAX_FIX_ID_CHARS for i in ids):
        raise BadRequestException("Fix id too long.")
    return ids


class JobsService:
    def __init__(
        self,
        db: Database,
        *,
        queue: Optional[DispatchQueue] = None,
        content_reader: Optional[ContentReader] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = JobStore(db)
        self.ledger = CreditLedger(db, self.settings)
        self.dedup = DedupEngine(self.store, self.settings)
        self.queue = queue or DispatchQueue()
        self.content_reader = content_reader or _s3_reader

    def credit_cost(self, kind: JobKind) -> int:
        if not KIND_SPECS[kind].billable:
            return 0
        return int(self.settings.CREDIT_COSTS.get(kind.value, 0))

    def _draft(self, owner_id: str, kind: JobKind, input_ref: str, address: str, params: dict) -> Job:
        now = _now()
        return Job(
            job_id=new_job_id(),
            owner_id=owner_id,
            kind=kind,
            input_ref=input_ref,
            params=params,
            dedup_domain=KIND_SPECS[kind].dedup_domain,
            dedup_key=dedup_key(kind.value, address),
            state=JobState.PENDING,
            created_at=now,
            updated_at=now,
            credit_cost=self.credit_cost(kind),
        )

    def submit_analysis(self, owner_id: str, kind: JobKind, input_ref: str) -> JobSubmitResponse:
        if kind not in ANALYSIS_KINDS:
            raise BadRequestException("Unsupported analysis kind.")
        input_ref = validate_media_key(owner_id, input_ref, kind)
        self._precheck_credits(owner_id, kind)
        try:
            content_id = content_address_stream(self.content_reader(input_ref))
        except ValueError as e:
            raise BadRequestException(str(e)) from e
        draft = self._draft(owner_id, kind, input_ref, content_id, {"content_id": content_id})
        return self._submit(draft)

    def submit_fix(self, owner_id: str, kind: JobKind, source_job_id: str, fix_ids: List[str]) -> JobSubmitResponse:
        if kind not in FIX_KINDS:
            raise BadRequestException("Unsupported fix kind.")
        ids = _validate_fix_ids(fix_ids)

        source = self.store.get(source_job_id)
        if not source.visible_to(owner_id):
            raise ForbiddenException("You don't have access to this media.")
        if source.kind != FIX_SOURCE_KIND[kind]:
            raise BadRequestException(f"A {kind.value} needs a {FIX_SOURCE_KIND[kind].value} source job.")
        content_id = source.params.get("content_id")
        if source.state != JobState.COMPLETED or not content_id:
            raise BadRequestException("Analysis must be completed before creating a fix.")

        self._precheck_credits(owner_id, kind)
        draft = self._draft(
            owner_id,
            kind,
            source.input_ref,
            request_address(content_id, ids),
            {"fix_ids": ids, "source_job_id": source.job_id, "content_id": content_id},
        )
        return self._submit(draft)

    def _precheck_credits(self, owner_id: str, kind: JobKind) -> None:
        cost = self.credit_cost(kind)
        if cost and not self.ledger.has_available(owner_id, cost):
            entry = self.ledger.get_entry(owner_id)
            raise InsufficientCreditsException(required=cost, available=entry.credits_remaining)

    def _submit(self, draft: Job) -> JobSubmitResponse:
        outcome = self.dedup.create_or_reuse(draft)
        job = outcome.job

        if outcome.disposition == "created":
            self._enqueue(job)
        elif outcome.cached:
            self._bill_cached_copy(outcome)

        logger.info(
            f"Job submitted: {job.job_id} kind={job.kind.value} owner={draft.owner_id} "
            f"disposition={outcome.disposition}"
        )
        return JobSubmitResponse(job_id=job.job_id, state=job.state.value, cached=outcome.cached)

    def _enqueue(self, job: Job) -> None:
        message = QueueMessage(job_id=job.job_id, kind=job.kind, payload={"owner_id": job.owner_id})
        try:
            task_id = self.queue.publish(topic_for(message), message)
        except Exception as e:
            self.store.fail_pending(job.job_id, f"Failed to enqueue job: {type(e).__name__}")
            logger.error(f"Failed to enqueue job {job.job_id}: {e}")
            raise ServiceUnavailableException("Failed to enqueue job. Check worker/broker configuration.") from e
        self.store.attach_task_id(job.job_id, task_id)

    def _bill_cached_copy(self, outcome: DedupOutcome) -> None:
        """Under the "request" policy a cache hit still costs credits."""
        job = outcome.job
        if self.settings.BILLING_POLICY != "request" or not job.billable:
            return
        try:
            self.ledger.debit(job.owner_id, job.credit_cost, reference=job.job_id, type=f"{job.kind.value}_cached")
        except InsufficientCreditsException:
            self.store.mark_charge_skipped(job.job_id)
            logger.warning(f"Cached job {job.job_id} delivered uncharged: insufficient credits")
            return
        self.store.mark_charged(job.job_id)

    def get_job_for_user(self, job_id: str, user_id: str) -> Job:
        job = self.store.get(job_id)
        if not job.visible_to(user_id):
            raise NotFoundException("Job not found")
        return job
