"""Owner-scoped read access to job state."""

from __future__ import annotations

from typing import Optional

from app.core.errors import NotFoundError
from app.models.job import JobPage, JobState, JobStatusSnapshot
from app.services.job_store import JobStore

MAX_PAGE_SIZE = 100


class JobStatusReader:
    """Reads never mutate jobs and never reveal jobs owned by someone else."""

    def __init__(self, jobs: JobStore) -> None:
        self._jobs = jobs

    def get(self, job_id: str, owner_id: str) -> JobStatusSnapshot:
        job = self._jobs.get(job_id)
        # Someone else's job is reported exactly like a missing one.
        if job is None or job.owner_id != owner_id:
            raise NotFoundError(f"Job {job_id} not found")
        return job.snapshot()

    def list(
        self,
        owner_id: str,
        state: Optional[JobState] = None,
        page: int = 1,
        limit: int = 10,
    ) -> JobPage:
        """Return one page of the owner's jobs, newest first."""

        page = max(1, page)
        limit = min(MAX_PAGE_SIZE, max(1, limit))
        jobs = self._jobs.list_by_owner(owner_id, state)
        start = (page - 1) * limit
        return JobPage(
            jobs=[job.snapshot() for job in jobs[start : start + limit]],
            page=page,
            limit=limit,
            total=len(jobs),
        )
