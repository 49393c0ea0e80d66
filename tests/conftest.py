"""Shared fixtures: in-memory runtime, fixed clock and image factories."""

from datetime import datetime, timedelta, timezone
from io import BytesIO

import pytest
from PIL import Image

from app.core.config import Settings
from app.models.image import ImageMetadata, ImageRecord, mime_type_for
from app.services.runtime import build_runtime

OWNER = "user-1"
OTHER_OWNER = "user-2"


def make_image_bytes(width=64, height=48, fmt="PNG", mode="RGB", color=(200, 60, 30)):
    """Encode a solid image with a contrasting block in the top-left corner."""
    image = Image.new(mode, (width, height), color if mode != "RGBA" else color + (255,))
    marker = (10, 200, 90) if mode != "RGBA" else (10, 200, 90, 255)
    image.paste(Image.new(mode, (max(1, width // 4), max(1, height // 4)), marker), (0, 0))
    output = BytesIO()
    image.save(output, format=fmt)
    return output.getvalue()


def open_image(data):
    image = Image.open(BytesIO(data))
    image.load()
    return image


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class RecordingDispatcher:
    """Collects (job_id, delay) pairs instead of queueing work."""

    def __init__(self):
        self.calls = []

    def __call__(self, job_id, delay):
        self.calls.append((job_id, delay))

    @property
    def job_ids(self):
        return [job_id for job_id, _ in self.calls]


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        job_backend="memory",
        storage_dir=str(tmp_path / "storage"),
        storage_public_base_url="http://testserver/storage",
        auth_jwt_secret="test-token",
    )


@pytest.fixture
def runtime(settings, dispatcher, clock):
    """In-memory stores, local storage in a temp dir and a fixed clock."""
    runtime = build_runtime(settings, dispatcher)
    runtime.coordinator.clock = clock
    yield runtime
    runtime.close()


@pytest.fixture
def seed_image(runtime, clock):
    """Store an encoded image for an owner and return its record."""

    def _seed(owner_id=OWNER, width=64, height=48, fmt="PNG", data=None, image_id=None):
        data = data if data is not None else make_image_bytes(width, height, fmt)
        extension = fmt.lower()
        image_id = image_id or f"img-{len(runtime.images.list_by_owner(owner_id, limit=100)) + 1}-{owner_id}"
        filename = f"{image_id}.{extension}"
        stored = runtime.storage.put(f"images/{owner_id}/{filename}", data, mime_type_for(extension))
        opened = open_image(data)
        record = ImageRecord(
            image_id=image_id,
            owner_id=owner_id,
            original_name=f"photo.{extension}",
            filename=filename,
            mime_type=mime_type_for(extension),
            size=len(data),
            width=opened.width,
            height=opened.height,
            storage_key=stored.key,
            public_url=stored.public_url,
            metadata=ImageMetadata(color_space="srgb", has_alpha=False, format=extension),
            created_at=clock(),
            updated_at=clock(),
        )
        runtime.images.create(record)
        runtime.users.adjust_storage_usage(owner_id, len(data))
        return record

    return _seed


@pytest.fixture
def image_factory():
    return make_image_bytes


@pytest.fixture
def load_image():
    return open_image
