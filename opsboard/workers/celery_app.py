"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from opsboard.core.config import settings

celery_app = Celery(
    "opsboard",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["opsboard.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.SCHEDULER_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # a batch run POSTs every new alert sequentially
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "run-daily-alerts": {
        "task": "opsboard.workers.tasks.run_daily_alerts",
        "schedule": crontab(
            hour=str(settings.DAILY_ALERTS_HOUR),
            minute=str(settings.DAILY_ALERTS_MINUTE),
        ),
    },
}
