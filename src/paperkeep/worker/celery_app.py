from __future__ import annotations

from celery import Celery

from paperkeep.core.config import settings


def make_celery() -> Celery:
    app = Celery("paperkeep", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment == "dev",
        task_eager_propagates=True,
        task_track_started=True,
        beat_schedule={
            "process-extraction-queue": {
                "task": "process_extraction_queue",
                "schedule": 60.0,
            },
        },
    )
    app.autodiscover_tasks(["paperkeep.worker.tasks"])
    return app


celery_app = make_celery()
