"""User storage accounting model."""

from __future__ import annotations

from pydantic import BaseModel


class UserRecord(BaseModel):
    """Quota and usage for one owner, in bytes."""

    user_id: str
    storage_quota: int
    storage_used: int = 0

    @property
    def storage_remaining(self) -> int:
        return max(0, self.storage_quota - self.storage_used)
