import logging

from celery import Celery
from celery.schedules import crontab

from fundops.core.config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

celery_app = Celery(
    "fundops",
    broker=settings.redis_url,
    backend=settings.redis_url,
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
    worker_hijack_root_logger=False,
    # Reminders sit in the broker for weeks; redeliveries are dropped by the
    # correlation-key claim in the dispatch task.
    broker_transport_options={"visibility_timeout": settings.broker_visibility_timeout_seconds},
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "capital-call-summary-daily": {
        "task": "fundops.services.capital_call_summary.send_capital_call_summaries",
        "schedule": crontab(hour=settings.capital_call_summary_hour, minute=0),
    },
}

# Explicitly include task modules so the worker registers them on startup.
celery_app.conf.include = [
    "fundops.services.notifications",
    "fundops.services.capital_call_summary",
]
