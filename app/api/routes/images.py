"""Routes that enqueue transform and optimize jobs for a stored image."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from app.api.dependencies import get_auth_dependency, get_current_owner, get_runtime
from app.models.job import JobAccepted
from app.services.runtime import Runtime

router = APIRouter(prefix="/images", tags=["images"], dependencies=[Depends(get_auth_dependency)])


class TransformRequest(BaseModel):
    # Validated by the coordinator so every caller gets the same field errors.
    transformations: Dict[str, Any]


class OptimizeRequest(BaseModel):
    # Range checked by the coordinator, reported as 400 like transform errors.
    quality: Optional[int] = None


@router.post(
    "/{image_id}/transform",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobAccepted,
    summary="Enqueue a transform job",
)
def enqueue_transform(
    image_id: str,
    payload: TransformRequest,
    owner_id: str = Depends(get_current_owner),
    runtime: Runtime = Depends(get_runtime),
) -> JobAccepted:
    """Validate the transformations and queue them; the derived image is produced asynchronously."""

    job = runtime.coordinator.submit_transform(owner_id, image_id, payload.transformations)
    return JobAccepted(job_id=job.job_id, status=job.state)


@router.post(
    "/{image_id}/optimize",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobAccepted,
    summary="Enqueue an optimize job",
)
def enqueue_optimize(
    image_id: str,
    payload: OptimizeRequest | None = None,
    owner_id: str = Depends(get_current_owner),
    runtime: Runtime = Depends(get_runtime),
) -> JobAccepted:
    quality = payload.quality if payload is not None else None
    job = runtime.coordinator.submit_optimize(owner_id, image_id, quality)
    return JobAccepted(job_id=job.job_id, status=job.state)
