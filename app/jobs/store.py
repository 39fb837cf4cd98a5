"""Job store: MongoDB-backed job records with compare-and-swap transitions.

Every mutation is a single-document atomic operation. The expected state is
part of the update filter, so two workers racing on the same job cannot both
win a transition.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import ConflictException, NotFoundException, StaleStateError
from app.jobs.models import DedupDomain, Job, JobState

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    (JobState.PENDING, JobState.PROCESSING),
    (JobState.PROCESSING, JobState.PROCESSING),  # lease reclaim
    (JobState.PROCESSING, JobState.COMPLETED),
    (JobState.PROCESSING, JobState.FAILED),
}

# Fields a transition patch may never touch.
IMMUTABLE_FIELDS = {
    "_id",
    "job_id",
    "owner_id",
    "kind",
    "input_ref",
    "dedup_domain",
    "dedup_key",
    "credit_cost",
    "credits_charged",
    "created_at",
}

MAX_ERROR_CHARS = 1200


def _now() -> datetime:
    return datetime.utcnow()


def _index_id(domain: DedupDomain, key: str) -> str:
    return f"{domain.value}:{key}"


def truncate_error(message: str) -> str:
    if len(message) > MAX_ERROR_CHARS:
        return message[:MAX_ERROR_CHARS] + "…"
    return message


class JobStore:
    def __init__(self, db: Database):
        self.db = db
        self._jobs = db["jobs"]
        self._dedup_index = db["job_dedup_index"]

    # ------------------------------------------------------------------ reads

    def get(self, job_id: str) -> Job:
        doc = self._jobs.find_one({"_id": job_id})
        if not doc:
            raise NotFoundException("Job not found")
        return Job.from_document(doc)

    def find_by_dedup_key(self, domain: DedupDomain, key: str) -> Optional[Job]:
        entry = self.dedup_index_entry(domain, key)
        if not entry:
            return None
        try:
            return self.get(entry["job_id"])
        except NotFoundException:
            # Indexed job was deleted by its owner.
            return None

    # ----------------------------------------------------------------- writes

    def create(self, job: Job) -> str:
        try:
            self._jobs.insert_one(job.to_document())
        except DuplicateKeyError as e:
            raise ConflictException(f"Job {job.job_id} already exists") from e
        logger.info(f"Job created: {job.job_id} kind={job.kind.value} state={job.state.value}")
        return job.job_id

    def transition(
        self,
        job_id: str,
        expected: JobState,
        new: JobState,
        patch: Optional[Dict[str, Any]] = None,
        *,
        extra_filter: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
    ) -> Job:
        """
        Move a job from `expected` to `new` atomically.

        Raises StaleStateError when the job is no longer in `expected` (or does
        not match `extra_filter`), NotFoundException when it does not exist.
        """
        if (expected, new) not in ALLOWED_TRANSITIONS:
            raise ValueError(f"Illegal transition {expected.value} -> {new.value}")

        patch = dict(patch or {})
        touched = IMMUTABLE_FIELDS.intersection(patch)
        if touched:
            raise ValueError(f"Immutable fields in patch: {sorted(touched)}")
        if "result" in patch and new != JobState.COMPLETED:
            raise ValueError("result may only be set on completion")
        if "error" in patch and new != JobState.FAILED:
            raise ValueError("error may only be set on failure")

        now = _now()
        fields = {**patch, "state": new.value, "updated_at": now}
        if new.is_terminal:
            fields["finished_at"] = now
            fields["lease_expires_at"] = None
        if new == JobState.FAILED:
            fields["result"] = None
            fields["error"] = truncate_error(str(fields.get("error") or "Job failed"))
        if new == JobState.COMPLETED:
            fields["error"] = None

        update: Dict[str, Any] = {"$set": fields}
        if inc:
            update["$inc"] = inc

        query = {"_id": job_id, "state": expected.value, **(extra_filter or {})}
        doc = self._jobs.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if doc is None:
            current = self._jobs.find_one({"_id": job_id}, {"state": 1})
            if current is None:
                raise NotFoundException("Job not found")
            raise StaleStateError(job_id, expected.value, current.get("state"))
        return Job.from_document(doc)

    def claim(self, job_id: str, lease_seconds: int) -> Job:
        """pending -> processing, starting a processing lease."""
        now = _now()
        return self.transition(
            job_id,
            JobState.PENDING,
            JobState.PROCESSING,
            {"started_at": now, "lease_expires_at": now + timedelta(seconds=lease_seconds)},
            inc={"attempts": 1},
        )

    def reclaim(self, job_id: str, lease_seconds: int, max_claims: int) -> Job:
        """processing -> processing, only once the previous lease has expired."""
        now = _now()
        return self.transition(
            job_id,
            JobState.PROCESSING,
            JobState.PROCESSING,
            {"started_at": now, "lease_expires_at": now + timedelta(seconds=lease_seconds)},
            extra_filter={"lease_expires_at": {"$lt": now}, "attempts": {"$lt": max_claims}},
            inc={"attempts": 1},
        )

    def abandon(self, job_id: str, reason: str) -> Job:
        """processing -> failed for a job whose lease expired with no claims left."""
        return self.transition(
            job_id,
            JobState.PROCESSING,
            JobState.FAILED,
            {"error": reason},
            extra_filter={"lease_expires_at": {"$lt": _now()}},
        )

    def mark_charged(self, job_id: str) -> bool:
        """credits_charged false -> true; False if it was already true."""
        res = self._jobs.update_one(
            {"_id": job_id, "credits_charged": False},
            {"$set": {"credits_charged": True, "charge_skipped": False, "updated_at": _now()}},
        )
        return res.modified_count == 1

    def mark_charge_skipped(self, job_id: str) -> bool:
        res = self._jobs.update_one(
            {"_id": job_id, "credits_charged": False},
            {"$set": {"charge_skipped": True, "updated_at": _now()}},
        )
        return res.modified_count == 1

    def add_requester(self, job_id: str, user_id: str) -> None:
        self._jobs.update_one({"_id": job_id}, {"$addToSet": {"requester_ids": user_id}})

    def attach_task_id(self, job_id: str, task_id: str) -> None:
        self._jobs.update_one({"_id": job_id}, {"$set": {"task_id": task_id, "updated_at": _now()}})

    def fail_pending(self, job_id: str, reason: str) -> None:
        """Fail a job that never left `pending` (e.g. its message could not be published)."""
        now = _now()
        self._jobs.update_one(
            {"_id": job_id, "state": JobState.PENDING.value},
            {
                "$set": {
                    "state": JobState.FAILED.value,
                    "error": truncate_error(reason),
                    "updated_at": now,
                    "finished_at": now,
                }
            },
        )

    # ------------------------------------------------------------ dedup index

    def dedup_index_entry(self, domain: DedupDomain, key: str) -> Optional[dict]:
        return self._dedup_index.find_one({"_id": _index_id(domain, key)})

    def claim_dedup_key(self, domain: DedupDomain, key: str, job_id: str) -> bool:
        """Point a so-far unseen key at `job_id`. False if the key is already indexed."""
        try:
            self._dedup_index.insert_one(
                {
                    "_id": _index_id(domain, key),
                    "domain": domain.value,
                    "key": key,
                    "job_id": job_id,
                    "updated_at": _now(),
                }
            )
        except DuplicateKeyError:
            return False
        return True

    def swap_dedup_key(self, domain: DedupDomain, key: str, expected_job_id: str, job_id: str) -> bool:
        """Re-point an indexed key, only if it still points at `expected_job_id`."""
        res = self._dedup_index.update_one(
            {"_id": _index_id(domain, key), "job_id": expected_job_id},
            {"$set": {"job_id": job_id, "updated_at": _now()}},
        )
        return res.modified_count == 1

    def discard_draft(self, job_id: str) -> bool:
        """Delete a pending job that lost its dedup race before it was ever published."""
        res = self._jobs.delete_one({"_id": job_id, "state": JobState.PENDING.value, "task_id": None})
        return res.deleted_count == 1
