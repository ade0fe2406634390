"""
Capital call reminder / past-due scheduler.

Every capital call item gets a cascade of notifications anchored on the call
deadline D:

    reminder_7d   D - 7 days
    reminder_3d   D - 3 days
    reminder_1d   D - 1 day
    past_due      D
    past_due_7    D + 7 days

Only fire times strictly after ``now`` are submitted.  Jobs are addressed by
(job type, item id) alone, so any process can cancel jobs another process
scheduled.  Queue outages never raise out of this module.
"""

import logging
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable

from fundops.core.clock import as_utc
from fundops.core.queue import DelayedTaskQueue
from fundops.schemas.notification import NotificationJob
from fundops.services.capital_call_state import ItemStatus

logger = logging.getLogger(__name__)

# Item statuses from the wider account lifecycle that drive cancellation
DEFAULTED = "defaulted"
CANCELLED = "cancelled"


class JobClass(str, Enum):
    REMINDER = "reminder"
    PAST_DUE = "past_due"


class JobType(str, Enum):
    REMINDER_7D = "reminder_7d"
    REMINDER_3D = "reminder_3d"
    REMINDER_1D = "reminder_1d"
    PAST_DUE = "past_due"
    PAST_DUE_7 = "past_due_7"

    @property
    def job_class(self) -> JobClass:
        return _JOB_CLASS[self]

    @property
    def offset(self) -> timedelta:
        """Fire time relative to the deadline."""
        return _JOB_OFFSET[self]


_JOB_CLASS: dict[JobType, JobClass] = {
    JobType.REMINDER_7D: JobClass.REMINDER,
    JobType.REMINDER_3D: JobClass.REMINDER,
    JobType.REMINDER_1D: JobClass.REMINDER,
    JobType.PAST_DUE: JobClass.PAST_DUE,
    JobType.PAST_DUE_7: JobClass.PAST_DUE,
}

_JOB_OFFSET: dict[JobType, timedelta] = {
    JobType.REMINDER_7D: timedelta(days=-7),
    JobType.REMINDER_3D: timedelta(days=-3),
    JobType.REMINDER_1D: timedelta(days=-1),
    JobType.PAST_DUE: timedelta(0),
    JobType.PAST_DUE_7: timedelta(days=7),
}


def job_types_for(*classes: JobClass) -> tuple[JobType, ...]:
    """Job types belonging to any of ``classes``, in firing order."""
    return tuple(t for t in JobType if t.job_class in classes)


ALL_JOB_TYPES = tuple(JobType)


def fire_times(deadline: datetime, now: datetime) -> list[tuple[JobType, datetime]]:
    """The (job type, fire time) pairs still in the future at ``now``."""
    deadline, now = as_utc(deadline), as_utc(now)
    pairs = []
    for job_type in JobType:
        fire_at = deadline + job_type.offset
        if fire_at > now:
            pairs.append((job_type, fire_at))
    return pairs


def cancellation_policy(new_status: str, old_status: str) -> tuple[JobType, ...]:
    """Job types to cancel when an item moves from ``old_status`` to ``new_status``."""
    if new_status == ItemStatus.COMPLETE.value and old_status != ItemStatus.COMPLETE.value:
        return ALL_JOB_TYPES
    if new_status == CANCELLED:
        return ALL_JOB_TYPES
    if new_status == DEFAULTED:
        # A separate default notice takes over from here
        return job_types_for(JobClass.PAST_DUE)
    # Partial payments leave the obligation open; reminders keep running
    return ()


class CapitalCallScheduler:
    def __init__(self, queue: DelayedTaskQueue):
        self.queue = queue

    async def schedule_all(
        self,
        item_id: uuid.UUID | str,
        investor_id: uuid.UUID | str,
        fund_id: uuid.UUID | str,
        deadline: datetime,
        now: datetime,
    ) -> list[JobType]:
        """Submit the notification cascade for one item. Returns the job types accepted."""
        if not self.queue.is_available():
            logger.warning(
                "Notification queue unavailable - no reminders scheduled for capital call item %s",
                item_id,
            )
            return []

        now = as_utc(now)
        scheduled: list[JobType] = []
        for job_type, fire_at in fire_times(deadline, now):
            job = NotificationJob(
                type=job_type.value,
                capital_call_item_id=str(item_id),
                investor_id=str(investor_id),
                fund_id=str(fund_id),
                scheduled_at=now,
            )
            handle = await self.queue.schedule(job, fire_at - now)
            if handle is not None:
                scheduled.append(job_type)
            elif not self.queue.is_available():
                logger.warning(
                    "Notification queue went unavailable - rest of the cascade for capital call item %s not scheduled",
                    item_id,
                )
                break

        logger.info(
            "Scheduled %d notification(s) for capital call item %s", len(scheduled), item_id
        )
        return scheduled

    async def cancel_by_types(self, item_id: uuid.UUID | str, job_types: Iterable[JobType]) -> int:
        """Cancel outstanding jobs of ``job_types`` for the item. Returns the number cancelled."""
        job_types = list(job_types)
        if not job_types:
            return 0
        cancelled = await self.queue.cancel_by_correlation(
            [t.value for t in job_types], str(item_id)
        )
        if cancelled > 0:
            logger.info(
                "Cancelled %d notification(s) %s for capital call item %s",
                cancelled, [t.value for t in job_types], item_id,
            )
        return cancelled

    async def handle_status_change(
        self,
        item_id: uuid.UUID | str,
        new_status: str,
        old_status: str,
    ) -> int:
        """Suppress the notifications a status transition made irrelevant.

        Must be called once per real transition; repeats are harmless since
        cancelling a cancelled or fired job is a no-op.
        """
        to_cancel = cancellation_policy(
            getattr(new_status, "value", new_status), getattr(old_status, "value", old_status)
        )
        if not to_cancel:
            return 0
        return await self.cancel_by_types(item_id, to_cancel)
