from datetime import datetime

import mongomock
import pytest

from app.core.config import Settings
from app.jobs.models import DedupDomain, Job, JobKind, JobState
from app.jobs.service import JobsService


class FakeQueue:
    """Records published messages instead of talking to a broker."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    def publish(self, topic, message):
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.published.append((topic, message))
        return f"task-{len(self.published)}"


@pytest.fixture
def db():
    return mongomock.MongoClient()["mediajobs_test"]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        BILLING_POLICY="request",
        UPSTREAM_MAX_ATTEMPTS=3,
        UPSTREAM_RETRY_BACKOFF_SECONDS=0.0,
        JOB_LEASE_SECONDS=600,
        JOB_MAX_CLAIMS=3,
        REVENUECAT_WEBHOOK_SECRET="",
    )


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def blobs():
    """S3 stand-in: input_ref -> bytes."""
    return {}


@pytest.fixture
def service(db, queue, blobs, settings):
    return JobsService(db, queue=queue, content_reader=lambda ref: [blobs[ref]], settings=settings)


def make_job(job_id="job-1", owner_id="u1", kind=JobKind.IMAGE_ANALYSIS, key="k" * 64, **overrides):
    now = datetime.utcnow()
    fields = dict(
        job_id=job_id,
        owner_id=owner_id,
        kind=kind,
        input_ref=f"uploads/{owner_id}/room.jpg",
        dedup_domain=DedupDomain.CONTENT if kind in (JobKind.IMAGE_ANALYSIS, JobKind.VIDEO_ANALYSIS) else DedupDomain.REQUEST,
        dedup_key=key,
        state=JobState.PENDING,
        created_at=now,
        updated_at=now,
        credit_cost=1,
    )
    fields.update(overrides)
    return Job(**fields)


ANALYSIS_RESULT = {
    "media_type": "image",
    "overall": {"score": 62, "grade": "C", "summary": "Dim and cluttered."},
    "dimensions": {
        "lighting": {
            "score": 40,
            "status": "poor",
            "problems": [
                {"problem_id": "p1", "title": "Harsh overhead light", "severity": "high"},
                {"problem_id": "p2", "title": "No task lighting", "severity": "medium"},
            ],
            "solutions": [],
        },
        "clutter": {
            "score": 55,
            "status": "needs_improvement",
            "problems": [{"problem_id": "p3", "title": "Cables on the floor", "severity": "low"}],
            "solutions": [],
        },
    },
    "frames_analyzed": 1,
    "model": "gpt-4o",
}
