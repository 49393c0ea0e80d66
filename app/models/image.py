"""Image records and the transient working buffer used by the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, List, Optional

from PIL import Image
from pydantic import BaseModel, Field

from .job import utcnow

MIME_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "avif": "image/avif",
    "gif": "image/gif",
    "tiff": "image/tiff",
}

FILE_EXTENSIONS = {
    "jpeg": "jpg",
    "png": "png",
    "webp": "webp",
    "avif": "avif",
    "gif": "gif",
    "tiff": "tiff",
}


def mime_type_for(fmt: str, default: str = "application/octet-stream") -> str:
    return MIME_TYPES.get(fmt.lower(), default)


def color_space_for(mode: str) -> str:
    """Map a Pillow mode to the colour space name stored on image records."""

    if mode in ("1", "L", "LA", "I", "I;16", "F"):
        return "b-w"
    if mode == "CMYK":
        return "cmyk"
    return "srgb"


@dataclass(frozen=True)
class ImageBuffer:
    """Decoded image plus its encoding state.

    ``data`` holds encoded bytes only after an encoding stage (compress or
    format conversion) ran; geometric and content stages clear it.
    """

    image: Image.Image
    format: str
    data: Optional[bytes] = None

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def color_space(self) -> str:
        return color_space_for(self.image.mode)

    @property
    def has_alpha(self) -> bool:
        return self.image.mode in ("RGBA", "LA", "PA") or "transparency" in self.image.info

    def with_image(self, image: Image.Image) -> "ImageBuffer":
        return replace(self, image=image, data=None)


class ImageMetadata(BaseModel):
    """Encoding details stored alongside an image record."""

    color_space: Optional[str] = None
    has_alpha: bool = False
    format: Optional[str] = None


class TransformationEntry(BaseModel):
    """One step of an image's lineage."""

    type: str
    parameters: Any = None
    applied_at: datetime = Field(default_factory=utcnow)


class ImageRecord(BaseModel):
    """Persisted metadata for a stored image."""

    image_id: str
    owner_id: str
    original_name: str
    filename: str
    mime_type: str
    size: int
    width: int
    height: int
    storage_key: str
    public_url: str
    metadata: ImageMetadata = Field(default_factory=ImageMetadata)
    transformations: List[TransformationEntry] = Field(default_factory=list)
    derived_from: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def with_updates(self, **changes: Any) -> "ImageRecord":
        """Return a copy with the given fields changed and a fresh timestamp."""

        changes.setdefault("updated_at", utcnow())
        return self.model_copy(update=changes)
