"""Object storage contract and a local filesystem implementation."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from app.core.errors import ObjectNotFound, StorageUnavailable
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoredObject:
    key: str
    public_url: str


class ObjectStorage(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> StoredObject: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> bool: ...

    def exists(self, key: str) -> bool: ...


class LocalObjectStorage:
    """Stores objects as files under ``base_dir``; URLs are rooted at ``public_base_url``."""

    def __init__(self, base_dir: str | Path, public_base_url: str) -> None:
        self._base_dir = Path(base_dir).resolve()
        self._public_base_url = public_base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self._base_dir / key).resolve()
        if self._base_dir not in path.parents:
            raise StorageUnavailable(f"Key escapes storage root: {key}")
        return path

    def public_url(self, key: str) -> str:
        return f"{self._public_base_url}/{key}"

    def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            logger.error("storage_upload_failed", key=key, error=str(exc))
            raise StorageUnavailable(f"Failed to upload {key}: {exc}") from exc
        logger.info("storage_object_uploaded", key=key, content_type=content_type, bytes=len(data))
        return StoredObject(key=key, public_url=self.public_url(key))

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ObjectNotFound(key) from exc
        except OSError as exc:
            logger.error("storage_download_failed", key=key, error=str(exc))
            raise StorageUnavailable(f"Failed to download {key}: {exc}") from exc

    def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageUnavailable(f"Failed to delete {key}: {exc}") from exc
        logger.info("storage_object_deleted", key=key)
        return True

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()
