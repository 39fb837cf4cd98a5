"""Jobs models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Literal

from pydantic import BaseModel, Field


class JobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class JobKind(str, Enum):
    IMAGE_ANALYSIS = "image_analysis"
    VIDEO_ANALYSIS = "video_analysis"
    IMAGE_FIX = "image_fix"
    VIDEO_FIX = "video_fix"


class DedupDomain(str, Enum):
    CONTENT = "content"
    REQUEST = "request"


@dataclass(frozen=True)
class KindSpec:
    """Static properties of a job family."""

    topic: str
    dedup_domain: Optional[DedupDomain]
    billable: bool = True


# One topic per job family; analysis dedups on raw content, fixes on the request.
KIND_SPECS: Dict[JobKind, KindSpec] = {
    JobKind.IMAGE_ANALYSIS: KindSpec(topic="analysis", dedup_domain=DedupDomain.CONTENT),
    JobKind.VIDEO_ANALYSIS: KindSpec(topic="analysis", dedup_domain=DedupDomain.CONTENT),
    JobKind.IMAGE_FIX: KindSpec(topic="fix", dedup_domain=DedupDomain.REQUEST),
    JobKind.VIDEO_FIX: KindSpec(topic="fix", dedup_domain=DedupDomain.REQUEST),
}

ANALYSIS_KINDS = (JobKind.IMAGE_ANALYSIS, JobKind.VIDEO_ANALYSIS)
FIX_KINDS = (JobKind.IMAGE_FIX, JobKind.VIDEO_FIX)
FIX_SOURCE_KIND = {
    JobKind.IMAGE_FIX: JobKind.IMAGE_ANALYSIS,
    JobKind.VIDEO_FIX: JobKind.VIDEO_ANALYSIS,
}


class Job(BaseModel):
    """A job record as stored in the `jobs` collection."""

    job_id: str
    owner_id: str
    kind: JobKind
    input_ref: str
    params: Dict[str, Any] = Field(default_factory=dict)
    dedup_domain: Optional[DedupDomain] = None
    dedup_key: Optional[str] = None
    state: JobState = JobState.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    lease_expires_at: Optional[datetime] = None
    credit_cost: int = 0
    credits_charged: bool = False
    charge_skipped: bool = False
    requester_ids: List[str] = Field(default_factory=list)
    copied_from: Optional[str] = None
    task_id: Optional[str] = None

    @property
    def billable(self) -> bool:
        return KIND_SPECS[self.kind].billable and self.credit_cost > 0

    def visible_to(self, user_id: str) -> bool:
        return self.owner_id == user_id or user_id in self.requester_ids

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["kind"] = self.kind.value
        doc["state"] = self.state.value
        doc["dedup_domain"] = self.dedup_domain.value if self.dedup_domain else None
        doc["_id"] = self.job_id
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Job":
        data = dict(doc)
        data.pop("_id", None)
        return cls.model_validate(data)


class QueueMessage(BaseModel):
    """Envelope published to the dispatch queue."""

    job_id: str
    kind: JobKind
    payload: Dict[str, Any] = Field(default_factory=dict)


# API models

class AnalysisJobRequest(BaseModel):
    kind: Literal["image_analysis", "video_analysis"]
    input_ref: str = Field(..., min_length=1, max_length=1024, description="S3 key of the uploaded media")


class FixJobRequest(BaseModel):
    kind: Literal["image_fix", "video_fix"]
    source_job_id: str = Field(..., description="Completed analysis job of the media to fix")
    fix_ids: List[str] = Field(..., min_length=1, max_length=50)


class JobSubmitResponse(BaseModel):
    job_id: str
    state: Literal["pending", "processing", "completed"]
    cached: bool = False


class JobResponse(BaseModel):
    job_id: str
    kind: JobKind
    state: JobState
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    credits_charged: bool = False
    charge_skipped: bool = False
    copied_from: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            kind=job.kind,
            state=job.state,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            result=job.result,
            error=job.error,
            credits_charged=job.credits_charged,
            charge_skipped=job.charge_skipped,
            copied_from=job.copied_from,
        )
