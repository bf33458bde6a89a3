from celery import Celery
from celery.schedules import crontab

from sdr_ops.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "sdr_ops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["sdr_ops.automation.tasks"],
)
celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="automation",
    timezone="UTC",
)

celery_app.conf.beat_schedule = {
    "automation-stale-pending-sweep": {
        "task": "automation.sweep_stale_pending",
        "schedule": crontab(minute="*/5"),
    },
}
