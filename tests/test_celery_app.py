"""Tests for the Celery wiring under default settings."""

import pytest

from app.core.config import Settings
from app.models.job import JobState
from app.services.runtime import build_runtime
from app.tasks import image_tasks
from app.worker.celery_app import celery_app

from conftest import OWNER


@pytest.fixture
def sent_tasks(monkeypatch):
    """Capture messages handed to the broker."""
    sent = []

    def send_task(name, args=None, kwargs=None, **options):
        sent.append((name, args, options.get("countdown")))

    monkeypatch.setattr(celery_app, "send_task", send_task)
    return sent


@pytest.fixture
def runtime(tmp_path, clock, sent_tasks):
    """Default settings wired to the real task dispatcher."""
    runtime = build_runtime(Settings(storage_dir=str(tmp_path / "storage")), image_tasks.dispatch_job)
    runtime.coordinator.clock = clock
    yield runtime
    runtime.close()


def test_tasks_are_not_eager_by_default():
    assert Settings().celery_task_always_eager is False
    assert celery_app.conf.task_always_eager is False


def test_submission_only_queues_the_job(runtime, sent_tasks, seed_image):
    """Test that submitting under default settings leaves the job waiting for a worker."""
    image = seed_image()

    job = runtime.coordinator.submit_transform(OWNER, image.image_id, {"flip": True})

    assert runtime.jobs.get(job.job_id).state is JobState.waiting
    assert runtime.jobs.get(job.job_id).progress == 0
    assert sent_tasks == [("image.execute_job", [job.job_id], None)]


def test_retry_delay_becomes_countdown(sent_tasks):
    image_tasks.dispatch_job("job_abc", 4.0)
    assert sent_tasks == [("image.execute_job", ["job_abc"], 4.0)]
