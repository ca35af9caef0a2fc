"""Celery app for the out-of-process safety nets.

Beat runs the hold expiry sweep every minute, covering API processes that
were down or lost their timers, and asks the provider about checkouts
whose webhook never arrived.
"""

from celery import Celery
from celery.schedules import crontab

from hostelhub.config import settings

celery_app = Celery(
    "hostelhub",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["hostelhub.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Africa/Accra",
    enable_utc=True,
    # A sweep lost with its worker is simply re-run on the next tick
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=120,
    task_soft_time_limit=90,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    beat_schedule={
        "expire-room-holds": {
            "task": "hostelhub.tasks.expire_room_holds",
            "schedule": crontab(minute="*"),
        },
        "verify-stale-payments": {
            "task": "hostelhub.tasks.verify_stale_payments",
            "schedule": crontab(minute="*/10"),
            "options": {"expires": 9 * 60},
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
