"""External operations run by workers, keyed by job kind.

An operation takes the claimed job and the job store and returns the result
document to store on completion. It raises TransientUpstreamError for
failures worth retrying and PermanentFailureError for everything else.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List

from app.ai.analysis import MediaAnalysisService
from app.ai.models import FixResult, MediaAnalysis
from app.ai.transform import MediaTransformClient
from app.ai.usage import AIUsageLog, AIUsageService
from app.core.aws import S3Service
from app.core.exceptions import NotFoundException, PermanentFailureError
from app.jobs.models import Job, JobKind, JobState
from app.jobs.store import JobStore

logger = logging.getLogger(__name__)

Operation = Callable[[Job, JobStore], Dict[str, Any]]

MEDIA_TYPES = {
    JobKind.IMAGE_ANALYSIS: "image",
    JobKind.IMAGE_FIX: "image",
    JobKind.VIDEO_ANALYSIS: "video",
    JobKind.VIDEO_FIX: "video",
}


def _presigned_urls(keys: List[str]) -> List[str]:
    try:
        s3 = S3Service()
        return [s3.generate_presigned_get_url(k) for k in keys]
    except ValueError as e:
        raise PermanentFailureError(str(e)) from e


def analyze_media(job: Job, store: JobStore) -> Dict[str, Any]:
    media_type = MEDIA_TYPES[job.kind]
    if media_type == "video":
        keys = MediaTransformClient().extract_frames(job.input_ref)
    else:
        keys = [job.input_ref]

    service = MediaAnalysisService()
    started = time.monotonic()
    status, error_type, outcome = "fail", None, None
    try:
        outcome = service.analyze(_presigned_urls(keys), media_type)
        status = "success"
    except Exception as e:
        error_type = type(e).__name__
        raise
    finally:
        AIUsageService.log(
            store.db,
            AIUsageLog(
                job_id=job.job_id,
                user_id=job.owner_id,
                operation=job.kind.value,
                model=service.model,
                status=status,
                latency_ms=int((time.monotonic() - started) * 1000),
                tokens_in=outcome.tokens_in if outcome else None,
                tokens_out=outcome.tokens_out if outcome else None,
                error_type=error_type,
            ),
            extra={"frames": len(keys)},
        )

    return outcome.analysis.model_dump(mode="json")


def _problems_to_fix(source: Job, fix_ids: List[str]) -> List[Dict[str, Any]]:
    try:
        analysis = MediaAnalysis.model_validate(source.result or {})
    except ValueError as e:
        raise PermanentFailureError(f"Source analysis {source.job_id} is unreadable") from e

    by_id = analysis.problems_by_id()
    unknown = [i for i in fix_ids if i not in by_id]
    if unknown:
        raise PermanentFailureError(f"Unknown problem ids: {', '.join(unknown)}")
    return [by_id[i].model_dump() for i in fix_ids]


def fix_media(job: Job, store: JobStore) -> Dict[str, Any]:
    source_job_id = job.params.get("source_job_id")
    fix_ids = list(job.params.get("fix_ids") or [])
    if not source_job_id or not fix_ids:
        raise PermanentFailureError("Fix job is missing its source job or fix ids")

    try:
        source = store.get(source_job_id)
    except NotFoundException as e:
        raise PermanentFailureError(f"Source analysis {source_job_id} no longer exists") from e
    if source.state != JobState.COMPLETED:
        raise PermanentFailureError(f"Source analysis {source_job_id} is {source.state.value}")

    problems = _problems_to_fix(source, fix_ids)
    media_type = MEDIA_TYPES[job.kind]
    data = MediaTransformClient().apply_fixes(media_type, job.input_ref, problems)

    result = FixResult(
        media_type=media_type,
        source_job_id=source_job_id,
        fix_ids=fix_ids,
        output_ref=data["output_ref"],
        thumbnail_ref=data.get("thumbnail_ref"),
        problems_fixed=[p["title"] for p in problems],
        changes_applied=list(data.get("changes_applied") or []),
        summary=data.get("summary"),
    )
    return result.model_dump(mode="json")


def default_operations() -> Dict[JobKind, Operation]:
    return {
        JobKind.IMAGE_ANALYSIS: analyze_media,
        JobKind.VIDEO_ANALYSIS: analyze_media,
        JobKind.IMAGE_FIX: fix_media,
        JobKind.VIDEO_FIX: fix_media,
    }
