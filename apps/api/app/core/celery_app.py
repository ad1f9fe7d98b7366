from celery import Celery
from celery.schedules import crontab

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "nexa_process",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.process.tasks"],
)
celery_app.conf.update(
    task_default_queue="process",
    task_acks_late=True,
    beat_schedule={
        "process-analytics-daily-rollup": {
            "task": "process.rollup_analytics",
            "schedule": crontab(hour=0, minute=15),
        },
    },
)
