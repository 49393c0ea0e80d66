"""Domain error taxonomy shared by the pipeline, the job coordinator and the API."""

from __future__ import annotations

from typing import Any, Dict, List


class ImagePipelineError(Exception):
    """Base class for all domain errors."""


class TransformValidationError(ImagePipelineError):
    """A transform specification is structurally invalid. Never enqueued."""

    def __init__(self, message: str, errors: List[Dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class OperationError(ImagePipelineError):
    """A single pipeline stage failed."""

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage}: {reason}")
        self.stage = stage
        self.reason = reason


class DimensionExceeded(OperationError):
    def __init__(self, limit: int) -> None:
        super().__init__("resize", f"Maximum dimension allowed is {limit}px")
        self.limit = limit


class InvalidCropRegion(OperationError):
    def __init__(self, reason: str) -> None:
        super().__init__("crop", reason)


class WatermarkSourceMissing(OperationError):
    def __init__(self) -> None:
        super().__init__("watermark", "No watermark image supplied")


class UnsupportedFormat(OperationError):
    def __init__(self, stage: str, fmt: str) -> None:
        super().__init__(stage, f"Unsupported format: {fmt}")
        self.format = fmt


class StorageError(ImagePipelineError):
    """Object storage fetch/upload/delete failed. Retryable at the job level."""


class StorageUnavailable(StorageError):
    pass


class ObjectNotFound(StorageError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key


class NotFoundError(ImagePipelineError):
    """Referenced image or job does not exist or belongs to someone else."""


class CapacityError(ImagePipelineError):
    """The owner's storage quota would be exceeded."""


class JobPayloadError(ImagePipelineError):
    """A stored job carries a payload that cannot be decoded for its kind."""


class InvalidJobTransition(ImagePipelineError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.current = current
        self.target = target


class LeaseLostError(ImagePipelineError):
    """The worker no longer holds the lease on the job it is writing."""

    def __init__(self, job_id: str, worker_id: str) -> None:
        super().__init__(f"Worker {worker_id} does not hold the lease on job {job_id}")
        self.job_id = job_id
        self.worker_id = worker_id
