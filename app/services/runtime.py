"""Wiring of stores, storage and coordinator for one process."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis

from app.core.config import Settings
from app.core.logging import get_logger
from app.models.job import JobKind
from app.services.coordinator import Dispatcher, JobCoordinator
from app.services.job_status import JobStatusReader
from app.services.job_store import InMemoryJobStore, JobStore, RedisJobStore
from app.services.pipeline import PipelineExecutor
from app.services.records import (
    ImageStore,
    InMemoryImageStore,
    InMemoryUserStore,
    RedisImageStore,
    RedisUserStore,
    UserStore,
)
from app.services.retry import RetryPolicy
from app.services.storage import LocalObjectStorage, ObjectStorage

logger = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    jobs: JobStore
    images: ImageStore
    users: UserStore
    storage: ObjectStorage
    coordinator: JobCoordinator
    reader: JobStatusReader
    redis_client: Optional[redis.Redis] = None

    def close(self) -> None:
        self.jobs.close()
        if self.redis_client is not None:
            self.redis_client.close()
        logger.info("runtime_closed")


def retry_policies(settings: Settings) -> dict:
    return {
        JobKind.transform: RetryPolicy(settings.transform_max_attempts, settings.transform_backoff_seconds),
        JobKind.optimize: RetryPolicy(settings.optimize_max_attempts, settings.optimize_backoff_seconds),
    }


def build_runtime(settings: Settings, dispatch: Dispatcher) -> Runtime:
    """Create the collaborators selected by ``settings.job_backend``."""

    client: Optional[redis.Redis] = None
    if settings.job_backend == "redis":
        client = redis.Redis.from_url(settings.redis_url)
        jobs: JobStore = RedisJobStore(client, prefix=settings.redis_key_prefix)
        images: ImageStore = RedisImageStore(client, prefix=settings.redis_key_prefix)
        users: UserStore = RedisUserStore(client, settings.default_storage_quota_bytes, prefix=settings.redis_key_prefix)
    else:
        if not settings.celery_task_always_eager:
            logger.warning("in_memory_backend_without_eager_tasks", environment=settings.environment)
        jobs = InMemoryJobStore()
        images = InMemoryImageStore()
        users = InMemoryUserStore(settings.default_storage_quota_bytes)

    storage = LocalObjectStorage(settings.storage_dir, settings.storage_public_base_url)
    executor = PipelineExecutor(
        max_dimension=settings.max_image_dimension,
        default_quality=settings.default_quality,
        watermark_scale=settings.watermark_scale,
    )
    coordinator = JobCoordinator(
        jobs=jobs,
        storage=storage,
        images=images,
        users=users,
        executor=executor,
        policies=retry_policies(settings),
        dispatch=dispatch,
        lease_seconds=settings.job_lease_seconds,
        optimize_min_reduction=settings.optimize_min_reduction,
        optimize_quality=settings.optimize_quality,
    )
    logger.info("runtime_built", job_backend=settings.job_backend, storage_dir=settings.storage_dir)
    return Runtime(
        settings=settings,
        jobs=jobs,
        images=images,
        users=users,
        storage=storage,
        coordinator=coordinator,
        reader=JobStatusReader(jobs),
        redis_client=client,
    )
