from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("lifecycle_governance", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "run-due-jobs": {
        "task": "app.tasks.run_due_jobs",
        "schedule": settings.job_poll_interval_seconds,
    },
}


@celery_app.task(name="app.tasks.run_due_jobs")
def run_due_jobs_task() -> dict[str, int]:
    from app.platform.engine import get_engine

    return get_engine().job_queue.run_due().model_dump()
