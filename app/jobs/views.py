"""Jobs API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path
from pymongo.database import Database

from app.core.database import get_db
from app.core.dependencies import get_current_user
from app.jobs.models import (
    AnalysisJobRequest,
    FixJobRequest,
    JobKind,
    JobResponse,
    JobSubmitResponse,
)
from app.jobs.service import JobsService


router = APIRouter(prefix="/jobs", tags=["Jobs"])


def get_jobs_service(db: Database = Depends(get_db)) -> JobsService:
    return JobsService(db)


@router.post("/analysis", response_model=JobSubmitResponse)
def create_analysis_job(
    body: AnalysisJobRequest,
    current_user: dict = Depends(get_current_user),
    service: JobsService = Depends(get_jobs_service),
):
    """
    Submit uploaded media for analysis.
    Returns immediately; identical media analyzed before is served from cache.
    """
    return service.submit_analysis(current_user["id"], JobKind(body.kind), body.input_ref.strip())


@router.post("/fix", response_model=JobSubmitResponse)
def create_fix_job(
    body: FixJobRequest,
    current_user: dict = Depends(get_current_user),
    service: JobsService = Depends(get_jobs_service),
):
    """Request a fix for problems found by a completed analysis."""
    return service.submit_fix(current_user["id"], JobKind(body.kind), body.source_job_id, body.fix_ids)


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str = Path(..., description="Job ID"),
    current_user: dict = Depends(get_current_user),
    service: JobsService = Depends(get_jobs_service),
):
    job = service.get_job_for_user(job_id, current_user["id"])
    return JobResponse.from_job(job)
