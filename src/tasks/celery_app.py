from celery import Celery

from src import config

celery = Celery(
    "ticketing_core",
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_BROKER_URL,
    include=["src.tasks.jobs"],
)

celery.conf.timezone = "UTC"

celery.conf.beat_schedule = {
    "expire-pending-bookings": {
        "task": "src.tasks.jobs.expire_pending_bookings",
        "schedule": config.SWEEPER_INTERVAL_SECONDS,
    },
    "reconcile-pending-payments": {
        "task": "src.tasks.jobs.reconcile_pending_payments",
        "schedule": config.RECONCILE_INTERVAL_SECONDS,
    },
}
