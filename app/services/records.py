"""Image metadata and user stores consumed by the job coordinator."""

from __future__ import annotations

from threading import Lock
from typing import Dict, List, Optional, Protocol

import redis

from app.core.logging import get_logger
from app.models.image import ImageRecord
from app.models.user import UserRecord

logger = get_logger(__name__)

SORTABLE_FIELDS = ("created_at", "updated_at", "size")


class ImageStore(Protocol):
    def create(self, record: ImageRecord) -> ImageRecord: ...

    def get(self, image_id: str) -> Optional[ImageRecord]: ...

    def get_owned(self, image_id: str, owner_id: str) -> Optional[ImageRecord]: ...

    def update(self, record: ImageRecord) -> ImageRecord: ...

    def list_by_owner(
        self,
        owner_id: str,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> List[ImageRecord]: ...


class UserStore(Protocol):
    def get(self, user_id: str) -> UserRecord: ...

    def has_capacity(self, user_id: str, additional_bytes: int) -> bool: ...

    def adjust_storage_usage(self, user_id: str, delta: int) -> UserRecord: ...


def _paginate(records: List[ImageRecord], page: int, limit: int, sort_by: str, descending: bool) -> List[ImageRecord]:
    if sort_by not in SORTABLE_FIELDS:
        raise ValueError(f"Cannot sort images by {sort_by}")
    ordered = sorted(records, key=lambda record: getattr(record, sort_by), reverse=descending)
    start = (max(1, page) - 1) * limit
    return ordered[start : start + limit]


class InMemoryImageStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: Dict[str, ImageRecord] = {}

    def create(self, record: ImageRecord) -> ImageRecord:
        with self._lock:
            if record.image_id in self._records:
                raise KeyError(f"Image {record.image_id} already exists")
            self._records[record.image_id] = record
        return record

    def get(self, image_id: str) -> Optional[ImageRecord]:
        with self._lock:
            return self._records.get(image_id)

    def get_owned(self, image_id: str, owner_id: str) -> Optional[ImageRecord]:
        record = self.get(image_id)
        if record is None or record.owner_id != owner_id:
            return None
        return record

    def update(self, record: ImageRecord) -> ImageRecord:
        with self._lock:
            if record.image_id not in self._records:
                raise KeyError(f"Image {record.image_id} not found")
            self._records[record.image_id] = record
        return record

    def list_by_owner(
        self,
        owner_id: str,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> List[ImageRecord]:
        with self._lock:
            owned = [record for record in self._records.values() if record.owner_id == owner_id]
        return _paginate(owned, page, limit, sort_by, descending)


class InMemoryUserStore:
    """Users are provisioned on first sight with the default quota."""

    def __init__(self, default_quota: int) -> None:
        self._lock = Lock()
        self._default_quota = default_quota
        self._users: Dict[str, UserRecord] = {}

    def _ensure(self, user_id: str) -> UserRecord:
        user = self._users.get(user_id)
        if user is None:
            user = UserRecord(user_id=user_id, storage_quota=self._default_quota)
            self._users[user_id] = user
        return user

    def get(self, user_id: str) -> UserRecord:
        with self._lock:
            return self._ensure(user_id)

    def has_capacity(self, user_id: str, additional_bytes: int) -> bool:
        return self.get(user_id).storage_remaining >= additional_bytes

    def adjust_storage_usage(self, user_id: str, delta: int) -> UserRecord:
        with self._lock:
            user = self._ensure(user_id)
            updated = user.model_copy(update={"storage_used": max(0, user.storage_used + delta)})
            self._users[user_id] = updated
            return updated

    def set_quota(self, user_id: str, quota: int) -> UserRecord:
        with self._lock:
            updated = self._ensure(user_id).model_copy(update={"storage_quota": quota})
            self._users[user_id] = updated
            return updated


class RedisImageStore:
    """Image records as JSON under ``{prefix}:image:{id}`` with a per-owner index."""

    def __init__(self, client: redis.Redis, prefix: str = "imagepipe") -> None:
        self._redis = client
        self._prefix = prefix

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    def create(self, record: ImageRecord) -> ImageRecord:
        if not self._redis.set(self._key("image", record.image_id), record.model_dump_json(), nx=True):
            raise KeyError(f"Image {record.image_id} already exists")
        self._redis.sadd(self._key("images", record.owner_id), record.image_id)
        return record

    def get(self, image_id: str) -> Optional[ImageRecord]:
        raw = self._redis.get(self._key("image", image_id))
        return ImageRecord.model_validate_json(raw) if raw is not None else None

    def get_owned(self, image_id: str, owner_id: str) -> Optional[ImageRecord]:
        record = self.get(image_id)
        if record is None or record.owner_id != owner_id:
            return None
        return record

    def update(self, record: ImageRecord) -> ImageRecord:
        if not self._redis.set(self._key("image", record.image_id), record.model_dump_json(), xx=True):
            raise KeyError(f"Image {record.image_id} not found")
        return record

    def list_by_owner(
        self,
        owner_id: str,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> List[ImageRecord]:
        image_ids = [image_id.decode() for image_id in self._redis.smembers(self._key("images", owner_id))]
        if not image_ids:
            return []
        raw_records = self._redis.mget([self._key("image", image_id) for image_id in image_ids])
        records = [ImageRecord.model_validate_json(raw) for raw in raw_records if raw is not None]
        return _paginate(records, page, limit, sort_by, descending)


class RedisUserStore:
    """Usage counters in a hash per user; increments are atomic, the quota check is not."""

    def __init__(self, client: redis.Redis, default_quota: int, prefix: str = "imagepipe") -> None:
        self._redis = client
        self._default_quota = default_quota
        self._prefix = prefix

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}"

    def get(self, user_id: str) -> UserRecord:
        values = self._redis.hgetall(self._key(user_id))
        quota = int(values.get(b"storage_quota", self._default_quota))
        used = int(values.get(b"storage_used", 0))
        return UserRecord(user_id=user_id, storage_quota=quota, storage_used=used)

    def has_capacity(self, user_id: str, additional_bytes: int) -> bool:
        return self.get(user_id).storage_remaining >= additional_bytes

    def adjust_storage_usage(self, user_id: str, delta: int) -> UserRecord:
        used = self._redis.hincrby(self._key(user_id), "storage_used", delta)
        if used < 0:
            self._redis.hset(self._key(user_id), "storage_used", 0)
            logger.warning("storage_usage_clamped", user_id=user_id, delta=delta)
        return self.get(user_id)
