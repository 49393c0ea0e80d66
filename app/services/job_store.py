"""Durable job registry with per-job leases.

The store is the single source of truth for job state. Workers mutate a job
only while holding its lease; every worker write is a compare-and-set on the
lease holder and raises :class:`LeaseLostError` when the lease is gone.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, List, Optional, Protocol, Tuple

import redis

from app.core.errors import JobPayloadError, LeaseLostError
from app.core.logging import get_logger
from app.models.job import Job, JobState

logger = get_logger(__name__)


class JobStore(Protocol):
    def create(self, job: Job) -> None: ...

    def get(self, job_id: str) -> Optional[Job]: ...

    def acquire_lease(self, job_id: str, worker_id: str, ttl_seconds: float, now: datetime) -> Optional[Job]: ...

    def save(self, job: Job, worker_id: str, ttl_seconds: float, now: datetime) -> None: ...

    def release_lease(self, job_id: str, worker_id: str) -> None: ...

    def list_by_owner(self, owner_id: str, state: Optional[JobState] = None) -> List[Job]: ...

    def list_active(self) -> List[Job]: ...

    def list_waiting(self, due_before: datetime) -> List[Job]: ...

    def list_finished(self, state: JobState, before: Optional[datetime] = None) -> List[Job]: ...

    def delete(self, job_id: str) -> bool: ...

    def close(self) -> None: ...


class InMemoryJobStore:
    """Thread-safe in-process job registry for tests and eager task execution."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, Job] = {}
        self._leases: Dict[str, Tuple[str, datetime]] = {}

    def create(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise KeyError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def _holds(self, job_id: str, worker_id: str, now: datetime) -> bool:
        lease = self._leases.get(job_id)
        return lease is not None and lease[0] == worker_id and lease[1] > now

    def acquire_lease(self, job_id: str, worker_id: str, ttl_seconds: float, now: datetime) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            lease = self._leases.get(job_id)
            if lease is not None and lease[0] != worker_id and lease[1] > now:
                return None
            self._leases[job_id] = (worker_id, now + timedelta(seconds=ttl_seconds))
            return job

    def save(self, job: Job, worker_id: str, ttl_seconds: float, now: datetime) -> None:
        with self._lock:
            if not self._holds(job.job_id, worker_id, now):
                raise LeaseLostError(job.job_id, worker_id)
            self._jobs[job.job_id] = job
            self._leases[job.job_id] = (worker_id, now + timedelta(seconds=ttl_seconds))

    def release_lease(self, job_id: str, worker_id: str) -> None:
        with self._lock:
            lease = self._leases.get(job_id)
            if lease is not None and lease[0] == worker_id:
                del self._leases[job_id]

    def list_by_owner(self, owner_id: str, state: Optional[JobState] = None) -> List[Job]:
        with self._lock:
            jobs = [
                job
                for job in self._jobs.values()
                if job.owner_id == owner_id and (state is None or job.state == state)
            ]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def list_active(self) -> List[Job]:
        with self._lock:
            return [job for job in self._jobs.values() if job.state == JobState.active]

    def list_waiting(self, due_before: datetime) -> List[Job]:
        with self._lock:
            return [
                job
                for job in self._jobs.values()
                if job.state == JobState.waiting and (job.available_at or job.created_at) <= due_before
            ]

    def list_finished(self, state: JobState, before: Optional[datetime] = None) -> List[Job]:
        with self._lock:
            return [
                job
                for job in self._jobs.values()
                if job.state == state
                and job.finished_at is not None
                and (before is None or job.finished_at < before)
            ]

    def delete(self, job_id: str) -> bool:
        with self._lock:
            self._leases.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None

    def close(self) -> None:
        pass


def _due_score(job: Job) -> float:
    return (job.available_at or job.created_at).timestamp()


# Write the job only if the lease still belongs to the caller, then extend it.
_SAVE_IF_HOLDER = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('SET', KEYS[2], ARGV[2])
    redis.call('PEXPIRE', KEYS[1], ARGV[3])
    return 1
end
return 0
"""

_RELEASE_IF_HOLDER = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisJobStore:
    """Redis-backed job registry shared by the API and all Celery workers.

    Layout under ``prefix``: ``job:{id}`` JSON record, ``lease:{id}`` holder
    with a TTL, ``owner:{owner}`` sorted by creation time, ``waiting`` sorted by
    the time a job becomes due, ``active`` set and ``finished:{state}`` sorted by
    finish time.
    """

    def __init__(self, client: redis.Redis, prefix: str = "imagepipe") -> None:
        self._redis = client
        self._prefix = prefix
        self._save_script = client.register_script(_SAVE_IF_HOLDER)
        self._release_script = client.register_script(_RELEASE_IF_HOLDER)

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    def _load(self, raw: Optional[bytes]) -> Optional[Job]:
        if raw is None:
            return None
        return Job.decode(raw)

    def _load_many(self, job_ids: List[bytes]) -> List[Job]:
        if not job_ids:
            return []
        keys = [self._key("job", job_id.decode()) for job_id in job_ids]
        jobs = []
        for key, raw in zip(keys, self._redis.mget(keys)):
            if raw is None:
                continue
            try:
                jobs.append(Job.decode(raw))
            except JobPayloadError as exc:
                logger.error("job_record_malformed", key=key, error=str(exc))
        return jobs

    def _index(self, pipe: redis.client.Pipeline, job: Job) -> None:
        waiting_key = self._key("waiting")
        if job.state == JobState.waiting:
            pipe.zadd(waiting_key, {job.job_id: _due_score(job)})
        else:
            pipe.zrem(waiting_key, job.job_id)
        active_key = self._key("active")
        if job.state == JobState.active:
            pipe.sadd(active_key, job.job_id)
        else:
            pipe.srem(active_key, job.job_id)
        if job.is_terminal and job.finished_at is not None:
            pipe.zadd(self._key("finished", job.state.value), {job.job_id: job.finished_at.timestamp()})

    def create(self, job: Job) -> None:
        created = self._redis.set(self._key("job", job.job_id), job.encode(), nx=True)
        if not created:
            raise KeyError(f"Job {job.job_id} already exists")
        pipe = self._redis.pipeline()
        pipe.zadd(self._key("owner", job.owner_id), {job.job_id: job.created_at.timestamp()})
        self._index(pipe, job)
        pipe.execute()

    def get(self, job_id: str) -> Optional[Job]:
        return self._load(self._redis.get(self._key("job", job_id)))

    def acquire_lease(self, job_id: str, worker_id: str, ttl_seconds: float, now: datetime) -> Optional[Job]:
        lease_key = self._key("lease", job_id)
        ttl_ms = int(ttl_seconds * 1000)
        if not self._redis.set(lease_key, worker_id, nx=True, px=ttl_ms):
            holder = self._redis.get(lease_key)
            if holder is None or holder.decode() != worker_id:
                return None
            self._redis.pexpire(lease_key, ttl_ms)
        job = self.get(job_id)
        if job is None:
            self.release_lease(job_id, worker_id)
        return job

    def save(self, job: Job, worker_id: str, ttl_seconds: float, now: datetime) -> None:
        written = self._save_script(
            keys=[self._key("lease", job.job_id), self._key("job", job.job_id)],
            args=[worker_id, job.encode(), int(ttl_seconds * 1000)],
        )
        if not written:
            raise LeaseLostError(job.job_id, worker_id)
        pipe = self._redis.pipeline()
        self._index(pipe, job)
        pipe.execute()

    def release_lease(self, job_id: str, worker_id: str) -> None:
        self._release_script(keys=[self._key("lease", job_id)], args=[worker_id])

    def list_by_owner(self, owner_id: str, state: Optional[JobState] = None) -> List[Job]:
        job_ids = self._redis.zrevrange(self._key("owner", owner_id), 0, -1)
        jobs = self._load_many(job_ids)
        if state is not None:
            jobs = [job for job in jobs if job.state == state]
        return jobs

    def list_active(self) -> List[Job]:
        return [job for job in self._load_many(list(self._redis.smembers(self._key("active")))) if job.state == JobState.active]

    def list_waiting(self, due_before: datetime) -> List[Job]:
        job_ids = self._redis.zrangebyscore(self._key("waiting"), "-inf", due_before.timestamp())
        return [job for job in self._load_many(job_ids) if job.state == JobState.waiting]

    def list_finished(self, state: JobState, before: Optional[datetime] = None) -> List[Job]:
        upper = before.timestamp() if before is not None else "+inf"
        job_ids = self._redis.zrangebyscore(self._key("finished", state.value), "-inf", f"({upper}" if before else upper)
        return [job for job in self._load_many(job_ids) if job.state == state]

    def delete(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None:
            return False
        pipe = self._redis.pipeline()
        pipe.delete(self._key("job", job_id), self._key("lease", job_id))
        pipe.zrem(self._key("owner", job.owner_id), job_id)
        pipe.srem(self._key("active"), job_id)
        pipe.zrem(self._key("waiting"), job_id)
        for state in (JobState.completed, JobState.failed):
            pipe.zrem(self._key("finished", state.value), job_id)
        pipe.execute()
        return True

    def close(self) -> None:
        self._redis.close()
