"""
Capital call notification consumer.

Runs inside the Celery worker.  Every job the queue client submits (scheduled
reminders and past-due notices as well as immediate notices) lands in
``dispatch_capital_call_notification``, which decides whether the job is
still wanted and forwards it to the notification service.  Rendering and
delivery happen in that service; failures there are logged and swallowed so
a notification outage never touches capital call state.
"""

import logging
import uuid
from decimal import Decimal

import requests
from redis.exceptions import RedisError

from fundops.core.clock import utcnow
from fundops.core.config import settings
from fundops.core.database import sync_session
from fundops.core.queue import DISPATCH_TASK
from fundops.core.redis import claim_job
from fundops.models.capital_call import CapitalCall, CapitalCallItem
from fundops.schemas.notification import NotificationJob
from fundops.services.capital_call_scheduler import JobClass, JobType
from fundops.services.capital_call_state import CallStatus, ItemStatus
from fundops.worker import celery_app

logger = logging.getLogger(__name__)

_SCHEDULED_TYPES = {t.value for t in JobType}


def send_notification(payload: dict) -> bool:
    """
    POST a notification payload to the notification service.

    Returns True on success, False on any error (logs the reason).
    Safe to call with notifications disabled - returns False silently.
    """
    if not settings.notifications_enabled:
        return False
    try:
        resp = requests.post(
            f"{settings.notification_service_url}/notify",
            json=payload,
            timeout=10,
        )
        if resp.status_code in (200, 201, 202):
            return True
        logger.warning(
            "Notification service returned %d: %s", resp.status_code, resp.text[:200]
        )
        return False
    except requests.RequestException as exc:
        logger.warning("Notification send failed (type=%s): %s", payload.get("type"), exc)
        return False


def _prepare_scheduled(job: NotificationJob) -> bool:
    """Check the item still owes money on an open call and record the reminder. False drops the job."""
    with sync_session() as db:
        item = db.get(CapitalCallItem, uuid.UUID(job.capital_call_item_id))
        if item is None:
            logger.info("Skipping %s - capital call item %s no longer exists", job.type, job.capital_call_item_id)
            return False
        if item.status == ItemStatus.COMPLETE.value:
            logger.info("Skipping %s - capital call item %s is complete", job.type, item.id)
            return False
        call = db.get(CapitalCall, item.capital_call_id)
        if call is None or call.status == CallStatus.CLOSED.value:
            logger.info("Skipping %s - capital call of item %s is closed", job.type, item.id)
            return False

        if JobType(job.type).job_class is JobClass.REMINDER:
            item.reminder_count = (item.reminder_count or 0) + 1
            item.last_reminder_at = utcnow()

        received = item.amount_received or Decimal(0)
        job.metadata.update(
            amount_due=str(item.amount_due),
            amount_received=str(received),
            amount_outstanding=str(item.amount_due - received),
            reminder_count=item.reminder_count,
        )
        db.commit()
    return True


@celery_app.task(
    bind=True,
    name=DISPATCH_TASK,
    autoretry_for=(RedisError,),
    retry_backoff=60,
    max_retries=3,
)
def dispatch_capital_call_notification(self, payload: dict) -> str:
    """Deliver one capital call notification. Returns sent | failed | skipped | cancelled."""
    job = NotificationJob.model_validate(payload)

    if job.type in _SCHEDULED_TYPES and job.capital_call_item_id:
        # A missing key means the job was cancelled after it left the queue
        if not claim_job(job.type, job.capital_call_item_id, self.request.id):
            logger.info(
                "Dropping %s for capital call item %s - cancelled or superseded",
                job.type, job.capital_call_item_id,
            )
            return "cancelled"
        if not _prepare_scheduled(job):
            return "skipped"

    sent = send_notification(job.model_dump(mode="json"))
    if not sent:
        logger.warning(
            "Notification %s for capital call item %s was not delivered",
            job.type, job.capital_call_item_id,
        )
    return "sent" if sent else "failed"
