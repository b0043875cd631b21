from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "p2padmin",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.services.idex_sync"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

_poll_seconds = settings.idex_sync_poll_minutes * 60

celery_app.conf.beat_schedule = {
    "process-idex-sync-orders": {
        "task": "app.services.idex_sync.process_pending_orders",
        "schedule": crontab(minute=f"*/{settings.idex_sync_poll_minutes}"),
        # Drop ticks that queued up while a long pass held the consumer lock
        "options": {"expires": _poll_seconds},
    },
    "sweep-stale-idex-sync-orders": {
        "task": "app.services.idex_sync.sweep_stale",
        "schedule": crontab(minute="*/5"),
    },
}
