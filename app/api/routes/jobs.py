"""Routes for reading job status."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_auth_dependency, get_current_owner, get_runtime
from app.models.job import JobPage, JobState, JobStatusSnapshot
from app.services.runtime import Runtime

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(get_auth_dependency)])


@router.get("", response_model=JobPage, summary="List the caller's jobs")
def list_jobs(
    state: Optional[JobState] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    owner_id: str = Depends(get_current_owner),
    runtime: Runtime = Depends(get_runtime),
) -> JobPage:
    return runtime.reader.list(owner_id, state=state, page=page, limit=limit)


@router.get("/{job_id}", response_model=JobStatusSnapshot, summary="Retrieve job status")
def get_job(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    runtime: Runtime = Depends(get_runtime),
) -> JobStatusSnapshot:
    """Return state, progress, attempts and result. Jobs of other users read as missing."""

    return runtime.reader.get(job_id, owner_id)
