"""Celery application configuration."""

from celery import Celery

from app.core.config import settings

celery_app = Celery("imagepipe", include=["app.tasks.image_tasks"])

broker_url = settings.celery_broker_url or settings.redis_url
result_backend = settings.celery_result_backend or settings.redis_url

celery_app.conf.update(
    broker_url=broker_url,
    result_backend=result_backend,
    task_default_queue="imagepipe",
    task_soft_time_limit=120,
    task_time_limit=180,
    worker_max_tasks_per_child=100,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_always_eager=settings.celery_task_always_eager,
    beat_schedule={
        "image-recover-stalled": {
            "task": "image.recover_stalled",
            "schedule": float(settings.stall_check_interval_seconds),
        },
        "image-redispatch-waiting": {
            "task": "image.redispatch_waiting",
            "schedule": float(settings.waiting_redispatch_seconds),
        },
        "image-cleanup-completed": {
            "task": "image.cleanup_completed",
            "schedule": 60.0 * 60,
        },
    },
)
