"""Shared job models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from app.core.errors import InvalidJobTransition, JobPayloadError
from app.models.transform import TransformSpecification


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    """Kinds of asynchronous work."""

    transform = "transform"
    optimize = "optimize"


class JobState(str, Enum):
    """Possible states for asynchronous jobs."""

    waiting = "waiting"
    active = "active"
    completed = "completed"
    failed = "failed"


ALLOWED_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.waiting: frozenset({JobState.active}),
    JobState.active: frozenset({JobState.completed, JobState.failed, JobState.waiting}),
    JobState.completed: frozenset(),
    JobState.failed: frozenset(),
}


class TransformPayload(BaseModel):
    kind: Literal["transform"] = "transform"
    specification: TransformSpecification


class OptimizePayload(BaseModel):
    kind: Literal["optimize"] = "optimize"
    quality: int = Field(default=85, ge=1, le=100)


JobPayload = Annotated[Union[TransformPayload, OptimizePayload], Field(discriminator="kind")]


class Job(BaseModel):
    """Durable unit of asynchronous work."""

    job_id: str
    owner_id: str
    image_id: str
    payload: JobPayload
    state: JobState = JobState.waiting
    progress: int = Field(default=0, ge=0, le=100)
    attempts: int = 0
    max_attempts: int = 1
    stalls: int = 0
    failure_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @property
    def kind(self) -> JobKind:
        return JobKind(self.payload.kind)

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.completed, JobState.failed)

    @classmethod
    def decode(cls, raw: str | bytes) -> "Job":
        """Parse a stored job, failing fast on malformed records."""

        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise JobPayloadError(f"Malformed job record: {exc.error_count()} error(s)") from exc

    def encode(self) -> str:
        return self.model_dump_json()

    def _transition(self, target: JobState, now: datetime, **changes: Any) -> "Job":
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidJobTransition(self.job_id, self.state.value, target.value)
        changes.update(state=target, updated_at=now)
        return self.model_copy(update=changes)

    def activate(self, worker_id: str, lease_expires_at: datetime, now: datetime) -> "Job":
        """Start a new attempt: progress restarts at zero."""

        return self._transition(
            JobState.active,
            now,
            attempts=self.attempts + 1,
            progress=0,
            started_at=now,
            finished_at=None,
            available_at=None,
            lease_owner=worker_id,
            lease_expires_at=lease_expires_at,
        )

    def with_progress(self, progress: int, now: datetime, lease_expires_at: datetime | None = None) -> "Job":
        """Return a copy with progress raised to ``progress`` (never lowered)."""

        update: Dict[str, Any] = {
            "progress": max(self.progress, min(100, max(0, progress))),
            "updated_at": now,
        }
        if lease_expires_at is not None:
            update["lease_expires_at"] = lease_expires_at
        return self.model_copy(update=update)

    def complete(self, result: Dict[str, Any], now: datetime) -> "Job":
        return self._transition(
            JobState.completed,
            now,
            progress=100,
            result=result,
            failure_reason=None,
            finished_at=now,
            lease_owner=None,
            lease_expires_at=None,
        )

    def requeue(self, reason: str, available_at: datetime, now: datetime, stalled: bool = False) -> "Job":
        """Send the job back to waiting after a failed or stalled attempt."""

        return self._transition(
            JobState.waiting,
            now,
            failure_reason=reason,
            available_at=available_at,
            stalls=self.stalls + (1 if stalled else 0),
            lease_owner=None,
            lease_expires_at=None,
        )

    def fail(self, reason: str, now: datetime, stalled: bool = False) -> "Job":
        return self._transition(
            JobState.failed,
            now,
            failure_reason=reason,
            finished_at=now,
            stalls=self.stalls + (1 if stalled else 0),
            lease_owner=None,
            lease_expires_at=None,
        )

    def snapshot(self) -> "JobStatusSnapshot":
        return JobStatusSnapshot(
            job_id=self.job_id,
            kind=self.kind,
            image_id=self.image_id,
            state=self.state,
            progress=self.progress,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            failure_reason=self.failure_reason,
            result=self.result,
        )


class JobStatusSnapshot(BaseModel):
    """Read-only view of a job returned to its owner."""

    job_id: str
    kind: JobKind
    image_id: str
    state: JobState
    progress: int
    attempts: int
    max_attempts: int
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class JobPage(BaseModel):
    """One page of an owner's jobs, newest first."""

    jobs: List[JobStatusSnapshot]
    page: int
    limit: int
    total: int


class JobAccepted(BaseModel):
    """Response body for an accepted submission."""

    job_id: str
    status: JobState
