"""
Delayed task queue client for capital call notifications.

Jobs are Celery tasks submitted with a countdown.  Each outstanding job is
also recorded in Redis under its correlation key
``capital_call_job:{job_type}:{correlation_id}`` so that any process can
cancel it by (job type, item id) without holding the Celery task id.

The client is capability-checked: when the queue is disabled, Redis or the
broker is down, or a call exceeds ``queue_timeout_seconds``, operations log a
warning and return a sentinel (None / False / 0) instead of raising.  After
such a failure the client reports itself unavailable for
``queue_failure_cooldown_seconds``, so a caller submitting many jobs pays for
one timeout, not one per job.
"""

import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Protocol, Sequence

import redis.asyncio as aioredis
from celery import Celery
from kombu.exceptions import OperationalError
from redis.exceptions import RedisError

from fundops.core.config import settings
from fundops.core.redis import COMPARE_AND_DELETE, get_redis, job_key
from fundops.schemas.notification import NotificationJob

logger = logging.getLogger(__name__)

DISPATCH_TASK = "fundops.services.notifications.dispatch_capital_call_notification"

_QUEUE_ERRORS = (asyncio.TimeoutError, RedisError, OperationalError, OSError)


class DelayedTaskQueue(Protocol):
    def is_available(self) -> bool: ...

    async def schedule(self, job: NotificationJob, delay: timedelta) -> str | None: ...

    async def cancel(self, handle: str) -> bool: ...

    async def cancel_by_correlation(self, job_types: Sequence[str], correlation_id: str) -> int: ...

    async def dispatch(self, job: NotificationJob) -> str | None: ...


class CeleryTaskQueue:
    def __init__(
        self,
        celery: Celery | None = None,
        redis_client: aioredis.Redis | None = None,
        *,
        enabled: bool | None = None,
        timeout: float | None = None,
        cooldown: float | None = None,
    ):
        self._celery = celery
        self._redis_client = redis_client
        self._enabled = settings.notification_queue_enabled if enabled is None else enabled
        self._timeout = settings.queue_timeout_seconds if timeout is None else timeout
        self._cooldown = settings.queue_failure_cooldown_seconds if cooldown is None else cooldown
        self._down_until = 0.0

    # ── Wiring ────────────────────────────────────────────────────────────────

    def _app(self) -> Celery:
        if self._celery is None:
            from fundops.worker import celery_app  # noqa: PLC0415

            self._celery = celery_app
        return self._celery

    def _redis(self) -> aioredis.Redis:
        return self._redis_client if self._redis_client is not None else get_redis()

    def is_available(self) -> bool:
        if not (self._enabled and settings.redis_url):
            return False
        return time.monotonic() >= self._down_until

    def _mark_down(self) -> None:
        self._down_until = time.monotonic() + self._cooldown

    # ── Public API ────────────────────────────────────────────────────────────

    async def schedule(self, job: NotificationJob, delay: timedelta) -> str | None:
        """Submit ``job`` to fire after ``delay``. Returns the task id, or None."""
        if not self.is_available():
            return None
        try:
            return await asyncio.wait_for(self._schedule(job, delay), self._timeout)
        except _QUEUE_ERRORS as exc:
            self._mark_down()
            logger.warning(
                "Queue unavailable - %s for item %s not scheduled: %r",
                job.type, job.capital_call_item_id, exc,
            )
            return None

    async def cancel(self, handle: str) -> bool:
        if not self.is_available():
            return False
        key = handle.rsplit(":", 1)[0]
        try:
            removed = await asyncio.wait_for(
                self._redis().eval(COMPARE_AND_DELETE, 1, key, handle), self._timeout
            )
        except _QUEUE_ERRORS as exc:
            self._mark_down()
            logger.warning("Queue unavailable - job %s not cancelled: %r", handle, exc)
            return False
        if removed != 1:
            return False
        await self._revoke([handle])
        return True

    async def cancel_by_correlation(self, job_types: Sequence[str], correlation_id: str) -> int:
        """Cancel every outstanding job of ``job_types`` for ``correlation_id``.

        Returns how many were still outstanding; jobs that already fired or
        were never scheduled don't count.  The count is settled once the keys
        are gone, whatever happens to the revoke afterwards.
        """
        if not self.is_available():
            return 0
        try:
            task_ids = await asyncio.wait_for(
                self._take_keys(job_types, correlation_id), self._timeout
            )
        except _QUEUE_ERRORS as exc:
            self._mark_down()
            logger.warning(
                "Queue unavailable - jobs %s for %s not cancelled: %r",
                list(job_types), correlation_id, exc,
            )
            return 0
        if task_ids:
            await self._revoke(task_ids)
        return len(task_ids)

    async def dispatch(self, job: NotificationJob) -> str | None:
        """Hand a notice to the dispatch task right away. Not correlated, not cancellable."""
        if not self.is_available():
            return None
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    self._app().send_task, DISPATCH_TASK, args=[job.model_dump(mode="json")]
                ),
                self._timeout,
            )
        except _QUEUE_ERRORS as exc:
            self._mark_down()
            logger.warning("Queue unavailable - %s notice not dispatched: %r", job.type, exc)
            return None
        return result.id

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _schedule(self, job: NotificationJob, delay: timedelta) -> str:
        key = job_key(job.type, job.capital_call_item_id)
        task_id = f"{key}:{uuid.uuid4().hex}"
        ttl = max(1, int(delay.total_seconds())) + settings.job_key_grace_seconds
        r = self._redis()

        if not await r.set(key, task_id, ex=ttl, nx=True):
            existing = await r.get(key)
            logger.info(
                "%s already outstanding for item %s (%s) - not resubmitted",
                job.type, job.capital_call_item_id, existing,
            )
            return existing

        try:
            await asyncio.to_thread(
                self._app().send_task,
                DISPATCH_TASK,
                args=[job.model_dump(mode="json")],
                countdown=delay.total_seconds(),
                task_id=task_id,
            )
        except BaseException:
            # No key may outlive a submission that did not happen
            await r.eval(COMPARE_AND_DELETE, 1, key, task_id)
            raise

        logger.debug(
            "Scheduled %s for item %s in %d min (task %s)",
            job.type, job.capital_call_item_id, delay.total_seconds() // 60, task_id,
        )
        return task_id

    async def _take_keys(self, job_types: Sequence[str], correlation_id: str) -> list[str]:
        # One MULTI/EXEC round trip: either every key is gone or none is
        async with self._redis().pipeline(transaction=True) as pipe:
            for job_type in job_types:
                pipe.getdel(job_key(job_type, correlation_id))
            values = await pipe.execute()
        return [v for v in values if v]

    async def _revoke(self, task_ids: list[str]) -> None:
        # The keys are already gone, so a missed revoke only means the worker
        # wakes up, fails its claim and drops the job.
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._app().control.revoke, task_ids), self._timeout
            )
        except (asyncio.TimeoutError, OperationalError, OSError) as exc:
            logger.warning("Revoke of %s failed, jobs will drop themselves on claim: %r", task_ids, exc)


_queue: CeleryTaskQueue | None = None


def get_task_queue() -> CeleryTaskQueue:
    global _queue
    if _queue is None:
        _queue = CeleryTaskQueue()
    return _queue
