import os

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from config import get_settings
from logging_config import setup_logging

broker_url = (
    os.getenv("CELERY_BROKER_URL")
    or os.getenv("REDIS_URL", "redis://localhost:6379/0")
)

backend_url = (
    os.getenv("CELERY_RESULT_BACKEND")
    or "redis://localhost:6379/1"    # safer than same DB as broker
)

app = Celery(
    "media_pipeline",
    broker=broker_url,
    backend=backend_url,
    include=["tasks.media", "tasks.maintenance"],
)

app.conf.update(
    task_default_queue="default",

    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone="UTC",
    enable_utc=True,

    task_acks_late=True,
    worker_prefetch_multiplier=1,

    task_routes={
        "tasks.media.*": {"queue": "media"},
        "tasks.maintenance.*": {"queue": "maintenance"},
    },

    beat_schedule={
        "purge-expired-cleanup-states": {
            "task": "tasks.maintenance.purge_expired_cleanup_states",
            "schedule": crontab(minute=0),
        },
        "prune-quarantine": {
            "task": "tasks.maintenance.prune_quarantine",
            "schedule": crontab(minute=30),
        },
        "cleanup-quarantine-sidecars": {
            "task": "tasks.maintenance.cleanup_quarantine_sidecars",
            "schedule": crontab(minute=15, hour=3),
        },
    },
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    # take over from celery's own handlers so worker logs go through structlog
    setup_logging(debug=get_settings().debug)
