"""Job coordinator: accepts submissions and executes transform/optimize jobs."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from app.core.errors import (
    CapacityError,
    ImagePipelineError,
    JobPayloadError,
    LeaseLostError,
    NotFoundError,
    TransformValidationError,
)
from app.core.logging import bind_job_context, clear_job_context, get_logger
from app.models.image import (
    FILE_EXTENSIONS,
    ImageMetadata,
    ImageRecord,
    TransformationEntry,
    mime_type_for,
)
from app.models.job import (
    Job,
    JobKind,
    JobPayload,
    JobState,
    OptimizePayload,
    TransformPayload,
    utcnow,
)
from app.models.transform import TransformSpecification
from app.services.job_store import JobStore
from app.services.pipeline import PipelineExecutor
from app.services.records import ImageStore, UserStore
from app.services.retry import RetryPolicy
from app.services.storage import ObjectStorage

logger = get_logger(__name__)

Dispatcher = Callable[[str, float], None]
Clock = Callable[[], datetime]

STALLED_LIMIT_REASON = "job stalled more than allowable limit"

# Progress reported as each pipeline stage group finishes.
TRANSFORM_STAGE_PROGRESS = {"decoded": 30, "geometry": 50, "content": 65, "encoded": 75}


class _Attempt:
    """The running attempt of one job, held under its lease."""

    def __init__(self, coordinator: "JobCoordinator", job: Job, worker_id: str) -> None:
        self._coordinator = coordinator
        self.job = job
        self.worker_id = worker_id

    def checkpoint(self, progress: int) -> None:
        """Record progress and renew the lease."""

        coordinator = self._coordinator
        now = coordinator.clock()
        self.job = self.job.with_progress(progress, now, now + timedelta(seconds=coordinator.lease_seconds))
        coordinator.jobs.save(self.job, self.worker_id, coordinator.lease_seconds, now)
        logger.debug("job_progress", job_id=self.job.job_id, progress=self.job.progress)


class JobCoordinator:
    """Owns the job lifecycle from submission to terminal state."""

    def __init__(
        self,
        jobs: JobStore,
        storage: ObjectStorage,
        images: ImageStore,
        users: UserStore,
        executor: PipelineExecutor,
        policies: Mapping[JobKind, RetryPolicy],
        dispatch: Dispatcher,
        lease_seconds: float = 30,
        optimize_min_reduction: float = 0.2,
        optimize_quality: int = 85,
        clock: Clock = utcnow,
    ) -> None:
        missing = [kind.value for kind in JobKind if kind not in policies]
        if missing:
            raise ValueError(f"No retry policy for job kinds: {', '.join(missing)}")
        self.jobs = jobs
        self.storage = storage
        self.images = images
        self.users = users
        self.executor = executor
        self.policies = dict(policies)
        self.dispatch = dispatch
        self.lease_seconds = lease_seconds
        self.optimize_min_reduction = optimize_min_reduction
        self.optimize_quality = optimize_quality
        self.clock = clock

    # Submission

    def submit_transform(
        self,
        owner_id: str,
        image_id: str,
        transformations: Mapping[str, Any] | TransformSpecification,
    ) -> Job:
        """Validate and enqueue a transform. Never runs the pipeline inline."""

        specification = TransformSpecification.parse(transformations)
        image = self._owned_image(image_id, owner_id)
        if not self.users.has_capacity(owner_id, image.size):
            raise CapacityError(f"Storage quota exceeded for user {owner_id}")
        return self._enqueue(owner_id, image_id, TransformPayload(specification=specification))

    def submit_optimize(self, owner_id: str, image_id: str, quality: Optional[int] = None) -> Job:
        try:
            payload = OptimizePayload(quality=self.optimize_quality if quality is None else quality)
        except ValidationError as exc:
            errors = [{"field": "quality", "message": error["msg"]} for error in exc.errors()]
            raise TransformValidationError("Invalid optimize request", errors) from exc
        self._owned_image(image_id, owner_id)
        return self._enqueue(owner_id, image_id, payload)

    def _owned_image(self, image_id: str, owner_id: str) -> ImageRecord:
        image = self.images.get_owned(image_id, owner_id)
        if image is None:
            raise NotFoundError(f"Image {image_id} not found")
        return image

    def _dispatch(self, job_id: str, delay: float) -> None:
        try:
            self.dispatch(job_id, delay)
        except Exception:
            # The record stays waiting; redispatch_waiting picks it up once the broker is back.
            logger.exception("job_dispatch_failed", job_id=job_id, delay_seconds=delay)
            raise

    def _enqueue(self, owner_id: str, image_id: str, payload: JobPayload) -> Job:
        now = self.clock()
        kind = JobKind(payload.kind)
        job = Job(
            job_id=f"job_{uuid.uuid4().hex}",
            owner_id=owner_id,
            image_id=image_id,
            payload=payload,
            max_attempts=self.policies[kind].max_attempts,
            created_at=now,
            updated_at=now,
            available_at=now,
        )
        self.jobs.create(job)
        logger.info("job_submitted", job_id=job.job_id, kind=kind.value, image_id=image_id, owner_id=owner_id)
        self._dispatch(job.job_id, 0.0)
        return job

    # Execution

    def execute(self, job_id: str, worker_id: str) -> Optional[Job]:
        """Run one attempt of ``job_id`` if it is waiting and the lease is free."""

        now = self.clock()
        try:
            job = self.jobs.acquire_lease(job_id, worker_id, self.lease_seconds, now)
        except JobPayloadError:
            logger.error("job_payload_malformed", job_id=job_id, worker_id=worker_id)
            self.jobs.release_lease(job_id, worker_id)
            raise
        if job is None:
            logger.info("job_lease_unavailable", job_id=job_id, worker_id=worker_id)
            return None
        if job.state != JobState.waiting:
            self.jobs.release_lease(job_id, worker_id)
            logger.info("job_not_waiting", job_id=job_id, state=job.state.value)
            return job
        if job.available_at is not None and job.available_at > now:
            self.jobs.release_lease(job_id, worker_id)
            delay = (job.available_at - now).total_seconds()
            logger.info("job_not_due", job_id=job_id, delay_seconds=delay)
            self._dispatch(job_id, delay)
            return job

        bind_job_context(job_id, kind=job.kind.value)
        try:
            job = job.activate(worker_id, now + timedelta(seconds=self.lease_seconds), now)
            self.jobs.save(job, worker_id, self.lease_seconds, now)
            logger.info("job_started", attempt=job.attempts, max_attempts=job.max_attempts, worker_id=worker_id)
            attempt = _Attempt(self, job, worker_id)
            try:
                result = self._run(attempt)
            except LeaseLostError:
                raise
            except Exception as exc:
                return self._handle_failure(attempt, exc)

            finished = attempt.job.complete(result, self.clock())
            self.jobs.save(finished, worker_id, self.lease_seconds, self.clock())
            logger.info("job_completed", attempt=finished.attempts, result=result)
            return finished
        except LeaseLostError:
            logger.warning("job_lease_lost", worker_id=worker_id)
            return None
        finally:
            self.jobs.release_lease(job_id, worker_id)
            clear_job_context()

    def _run(self, attempt: _Attempt) -> Dict[str, Any]:
        payload = attempt.job.payload
        if isinstance(payload, TransformPayload):
            return self._run_transform(attempt, payload)
        if isinstance(payload, OptimizePayload):
            return self._run_optimize(attempt, payload)
        raise JobPayloadError(f"Unsupported job payload: {type(payload).__name__}")

    def _handle_failure(self, attempt: _Attempt, exc: Exception) -> Job:
        job = attempt.job
        reason = str(exc) or type(exc).__name__
        now = self.clock()

        if isinstance(exc, ImagePipelineError):
            logger.error("job_attempt_failed", attempt=job.attempts, reason=reason, error_type=type(exc).__name__)
        else:
            logger.exception("job_attempt_failed", attempt=job.attempts, reason=reason, error_type=type(exc).__name__)

        policy = self.policies[job.kind]
        if isinstance(exc, JobPayloadError) or not policy.should_retry(job.attempts):
            failed = job.fail(reason, now)
            self.jobs.save(failed, attempt.worker_id, self.lease_seconds, now)
            logger.error("job_failed", attempts=failed.attempts, reason=reason)
            return failed

        delay = policy.delay_for(job.attempts)
        waiting = job.requeue(reason, now + timedelta(seconds=delay), now)
        self.jobs.save(waiting, attempt.worker_id, self.lease_seconds, now)
        self.jobs.release_lease(job.job_id, attempt.worker_id)
        logger.info("job_retry_scheduled", attempt=job.attempts, delay_seconds=delay)
        self._dispatch(job.job_id, delay)
        return waiting

    def _run_transform(self, attempt: _Attempt, payload: TransformPayload) -> Dict[str, Any]:
        job = attempt.job
        attempt.checkpoint(10)

        source = self._source_image(job)
        data = self.storage.get(source.storage_key)
        attempt.checkpoint(20)

        result = self.executor.run(
            data,
            payload.specification,
            on_stage=lambda stage: attempt.checkpoint(TRANSFORM_STAGE_PROGRESS[stage]),
        )

        # A fresh key per attempt: a crashed attempt leaves an orphan, never a clobbered object.
        extension = FILE_EXTENSIONS.get(result.format, result.format)
        filename = f"{uuid.uuid4().hex}_{PurePosixPath(source.filename).stem}.{extension}"
        key = f"images/{job.owner_id}/transformed/{filename}"
        mime_type = mime_type_for(result.format, source.mime_type)
        stored = self.storage.put(key, result.data, mime_type)
        logger.info("derived_image_uploaded", storage_key=stored.key, bytes=result.size)
        attempt.checkpoint(85)

        now = self.clock()
        history = [
            TransformationEntry(type=entry_type, parameters=parameters, applied_at=now)
            for entry_type, parameters in payload.specification.history_entries()
        ]
        record = ImageRecord(
            image_id=uuid.uuid4().hex,
            owner_id=job.owner_id,
            original_name=f"transformed_{source.original_name}",
            filename=filename,
            mime_type=mime_type,
            size=result.size,
            width=result.width,
            height=result.height,
            storage_key=stored.key,
            public_url=stored.public_url,
            metadata=ImageMetadata(color_space=result.color_space, has_alpha=result.has_alpha, format=result.format),
            transformations=list(source.transformations) + history,
            derived_from=source.image_id,
            created_at=now,
            updated_at=now,
        )
        self.images.create(record)
        attempt.checkpoint(95)

        self.users.adjust_storage_usage(job.owner_id, result.size)

        return {
            "transformed_image_id": record.image_id,
            "public_url": record.public_url,
            "storage_key": record.storage_key,
            "size": record.size,
            "width": record.width,
            "height": record.height,
            "format": result.format,
        }

    def _run_optimize(self, attempt: _Attempt, payload: OptimizePayload) -> Dict[str, Any]:
        job = attempt.job
        attempt.checkpoint(10)

        source = self._source_image(job)
        data = self.storage.get(source.storage_key)
        attempt.checkpoint(30)

        optimized = self.executor.optimize(data, quality=payload.quality, fmt=source.metadata.format)
        attempt.checkpoint(60)

        original_size = len(data)
        saved = original_size - optimized.size
        threshold = original_size * (1 - self.optimize_min_reduction)
        outcome = {
            "optimized": False,
            "original_size": original_size,
            "optimized_size": optimized.size,
            "saved_bytes": 0,
        }
        if optimized.size > threshold:
            logger.info("optimization_skipped", original_size=original_size, optimized_size=optimized.size)
            return outcome

        self.storage.put(source.storage_key, optimized.data, source.mime_type)

        now = self.clock()
        entry = TransformationEntry(
            type="compress",
            parameters={"quality": payload.quality, "format": optimized.format},
            applied_at=now,
        )
        self.images.update(
            source.with_updates(
                size=optimized.size,
                width=optimized.width,
                height=optimized.height,
                metadata=ImageMetadata(
                    color_space=optimized.color_space,
                    has_alpha=optimized.has_alpha,
                    format=optimized.format,
                ),
                transformations=list(source.transformations) + [entry],
                updated_at=now,
            )
        )
        attempt.checkpoint(90)

        self.users.adjust_storage_usage(job.owner_id, -saved)
        logger.info("image_optimized", saved_bytes=saved)
        outcome.update(optimized=True, saved_bytes=saved)
        return outcome

    def _source_image(self, job: Job) -> ImageRecord:
        source = self.images.get(job.image_id)
        if source is None or source.owner_id != job.owner_id:
            raise NotFoundError(f"Image {job.image_id} not found")
        return source

    # Maintenance

    def recover_stalled(self) -> List[Job]:
        """Return active jobs whose lease expired to waiting, or fail them when out of attempts."""

        recovered: List[Job] = []
        for job in self.jobs.list_active():
            reaper_id = f"reaper:{uuid.uuid4().hex}"
            now = self.clock()
            current = self.jobs.acquire_lease(job.job_id, reaper_id, self.lease_seconds, now)
            if current is None:
                continue
            try:
                if current.state != JobState.active:
                    continue
                logger.warning(
                    "job_stalled",
                    job_id=current.job_id,
                    attempt=current.attempts,
                    lost_worker=current.lease_owner,
                )
                if self.policies[current.kind].should_retry(current.attempts):
                    updated = current.requeue(f"Job stalled on worker {current.lease_owner}", now, now, stalled=True)
                else:
                    updated = current.fail(STALLED_LIMIT_REASON, now, stalled=True)
                    logger.error("job_failed", job_id=current.job_id, attempts=current.attempts, reason=STALLED_LIMIT_REASON)
                self.jobs.save(updated, reaper_id, self.lease_seconds, now)
                recovered.append(updated)
            finally:
                self.jobs.release_lease(job.job_id, reaper_id)

        for job in recovered:
            if job.state == JobState.waiting:
                self._dispatch(job.job_id, 0.0)
        return recovered

    def redispatch_waiting(self, grace: timedelta) -> List[Job]:
        """Queue again waiting jobs that have been due for longer than ``grace``.

        A job is saved before its message is sent, so a broker outage can leave
        a waiting job with nothing queued for it. Duplicate messages are harmless:
        only one worker gets the lease and later ones find the job no longer waiting.
        """

        stranded = self.jobs.list_waiting(self.clock() - grace)
        for job in stranded:
            logger.warning("job_redispatched", job_id=job.job_id, available_at=job.available_at)
            self._dispatch(job.job_id, 0.0)
        return stranded

    def cleanup_completed(self, retention: timedelta) -> int:
        """Delete completed jobs that finished before the retention window. Failed jobs are kept."""

        cutoff = self.clock() - retention
        removed = sum(1 for job in self.jobs.list_finished(JobState.completed, before=cutoff) if self.jobs.delete(job.job_id))
        if removed:
            logger.info("completed_jobs_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed

    def purge_failed(self, older_than: Optional[timedelta] = None) -> int:
        """Operator cleanup of failed jobs, optionally only those older than ``older_than``."""

        cutoff = self.clock() - older_than if older_than is not None else None
        removed = sum(1 for job in self.jobs.list_finished(JobState.failed, before=cutoff) if self.jobs.delete(job.job_id))
        logger.info("failed_jobs_purged", removed=removed)
        return removed
