"""Celery tasks for image transform and optimize jobs."""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Optional

from celery.signals import worker_process_init, worker_process_shutdown

from app.core.config import get_settings
from app.core.logging import configure_logging, get_logger
from app.services.runtime import Runtime, build_runtime
from app.worker.celery_app import celery_app

logger = get_logger(__name__)

_runtime: Optional[Runtime] = None


def dispatch_job(job_id: str, delay: float) -> None:
    """Hand a job id to the queue; ``delay`` is the retry backoff in seconds."""

    execute_job.apply_async(args=[job_id], countdown=delay or None)


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(get_settings(), dispatch_job)
    return _runtime


def shutdown_runtime() -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
        _runtime = None


@worker_process_init.connect
def _init_worker_process(**_: object) -> None:
    configure_logging()
    get_runtime()


@worker_process_shutdown.connect
def _shutdown_worker_process(**_: object) -> None:
    shutdown_runtime()


@celery_app.task(name="image.execute_job", bind=True)
def execute_job(self, job_id: str) -> Optional[dict]:
    """Run one attempt of a job. Retries are scheduled by the coordinator, not Celery."""

    worker_id = f"{self.request.hostname or 'local'}:{os.getpid()}:{self.request.id}"
    logger.info("image_job_task_received", job_id=job_id, worker_id=worker_id)
    job = get_runtime().coordinator.execute(job_id, worker_id)
    if job is None:
        return None
    return {"job_id": job.job_id, "state": job.state.value, "attempts": job.attempts}


@celery_app.task(name="image.recover_stalled")
def recover_stalled() -> dict:
    recovered = get_runtime().coordinator.recover_stalled()
    return {"recovered": [job.job_id for job in recovered]}


@celery_app.task(name="image.redispatch_waiting")
def redispatch_waiting() -> dict:
    runtime = get_runtime()
    grace = timedelta(seconds=runtime.settings.waiting_redispatch_seconds)
    return {"redispatched": [job.job_id for job in runtime.coordinator.redispatch_waiting(grace)]}


@celery_app.task(name="image.cleanup_completed")
def cleanup_completed() -> dict:
    runtime = get_runtime()
    retention = timedelta(seconds=runtime.settings.completed_job_retention_seconds)
    return {"removed": runtime.coordinator.cleanup_completed(retention)}


@celery_app.task(name="image.purge_failed")
def purge_failed(older_than_seconds: Optional[int] = None) -> dict:
    """Operator-triggered removal of failed jobs; never scheduled."""

    older_than = timedelta(seconds=older_than_seconds) if older_than_seconds is not None else None
    return {"removed": get_runtime().coordinator.purge_failed(older_than)}
