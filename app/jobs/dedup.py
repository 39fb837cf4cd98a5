"""Deduplication engine: decides whether a job request needs new computation.

Lookups go through the dedup index (one document per domain/key), so
concurrent creators for the same key race on a single document and at most
one of them ends up with an in-flight job for that key.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

from bson import ObjectId

from app.core.config import Settings, get_settings
from app.core.exceptions import ConflictException, NotFoundException
from app.jobs.models import Job, JobState
from app.jobs.store import JobStore

logger = logging.getLogger(__name__)

Disposition = Literal["created", "cached", "in_flight"]


def _now() -> datetime:
    return datetime.utcnow()


def new_job_id() -> str:
    return str(ObjectId())


@dataclass(frozen=True)
class DedupOutcome:
    job: Job
    disposition: Disposition

    @property
    def cached(self) -> bool:
        return self.disposition == "cached"


class DedupEngine:
    def __init__(self, store: JobStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def create_or_reuse(self, draft: Job) -> DedupOutcome:
        """
        Resolve `draft` (a not-yet-stored pending job) against prior work:

        - completed job with the same key -> independent completed copy
        - pending/processing job with the same key -> that job
        - failed or no job -> `draft` is stored as the new pending job
        """
        if draft.dedup_domain is None or draft.dedup_key is None:
            self.store.create(draft)
            return DedupOutcome(draft, "created")

        domain, key = draft.dedup_domain, draft.dedup_key
        short_key = key[:16]
        stored = False

        for _ in range(int(self.settings.DEDUP_MAX_RETRIES)):
            entry = self.store.dedup_index_entry(domain, key)
            existing = self._indexed_job(entry)

            if existing is not None and existing.state == JobState.COMPLETED:
                if stored:
                    self.store.discard_draft(draft.job_id)
                logger.info(f"dedup:hit domain={domain.value} key={short_key} source={existing.job_id}")
                return DedupOutcome(self._copy_completed(existing, draft), "cached")

            if existing is not None and existing.state in (JobState.PENDING, JobState.PROCESSING):
                if stored:
                    self.store.discard_draft(draft.job_id)
                if draft.owner_id != existing.owner_id:
                    self.store.add_requester(existing.job_id, draft.owner_id)
                logger.info(f"dedup:in_flight domain={domain.value} key={short_key} job={existing.job_id}")
                return DedupOutcome(existing, "in_flight")

            # Miss (no entry, failed job or deleted job): the draft must exist
            # before the index can point at it.
            if not stored:
                self.store.create(draft)
                stored = True

            if entry is None:
                won = self.store.claim_dedup_key(domain, key, draft.job_id)
            else:
                won = self.store.swap_dedup_key(domain, key, entry["job_id"], draft.job_id)
            if won:
                logger.info(f"dedup:miss domain={domain.value} key={short_key} job={draft.job_id}")
                return DedupOutcome(draft, "created")

        if stored:
            self.store.discard_draft(draft.job_id)
        raise ConflictException("Too many concurrent requests for the same content. Please retry.")

    def _indexed_job(self, entry: Optional[dict]) -> Optional[Job]:
        if not entry:
            return None
        try:
            return self.store.get(entry["job_id"])
        except NotFoundException:
            return None

    def _copy_completed(self, source: Job, draft: Job) -> Job:
        now = _now()
        result = copy.deepcopy(source.result)
        if result and draft.params.get("source_job_id") and "source_job_id" in result:
            # Request-scoped ids point at the requester's own jobs.
            result["source_job_id"] = draft.params["source_job_id"]
        job = draft.model_copy(
            update={
                "state": JobState.COMPLETED,
                "result": result,
                "error": None,
                "copied_from": source.job_id,
                "created_at": now,
                "updated_at": now,
                "finished_at": now,
                "credits_charged": False,
                "charge_skipped": False,
            }
        )
        self.store.create(job)
        return job
