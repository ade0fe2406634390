"""
Tests for the reminder / past-due scheduler against an in-memory queue.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from fundops.services.capital_call_scheduler import (
    ALL_JOB_TYPES,
    CapitalCallScheduler,
    JobClass,
    JobType,
    cancellation_policy,
    fire_times,
    job_types_for,
)
from fundops.services.capital_call_state import ItemStatus

NOW = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
ITEM = uuid.uuid4()
INVESTOR = uuid.uuid4()
FUND = uuid.uuid4()

REMINDERS = ["reminder_7d", "reminder_3d", "reminder_1d"]
PAST_DUE = ["past_due", "past_due_7"]


async def _schedule(queue, deadline, now=NOW):
    return await CapitalCallScheduler(queue).schedule_all(ITEM, INVESTOR, FUND, deadline, now)


# ── job types ────────────────────────────────────────────────────────────────

class TestJobTypes:
    def test_classes(self):
        assert [t.value for t in job_types_for(JobClass.REMINDER)] == REMINDERS
        assert [t.value for t in job_types_for(JobClass.PAST_DUE)] == PAST_DUE
        assert job_types_for(JobClass.REMINDER, JobClass.PAST_DUE) == ALL_JOB_TYPES

    def test_offsets(self):
        assert JobType.REMINDER_7D.offset == timedelta(days=-7)
        assert JobType.REMINDER_3D.offset == timedelta(days=-3)
        assert JobType.REMINDER_1D.offset == timedelta(days=-1)
        assert JobType.PAST_DUE.offset == timedelta(0)
        assert JobType.PAST_DUE_7.offset == timedelta(days=7)

    def test_fire_times_accept_naive_deadline_as_utc(self):
        naive = (NOW + timedelta(days=10)).replace(tzinfo=None)
        pairs = fire_times(naive, NOW)
        assert pairs[0] == (JobType.REMINDER_7D, NOW + timedelta(days=3))


# ── schedule_all ─────────────────────────────────────────────────────────────

class TestScheduleAll:
    async def test_ten_days_out_schedules_all_five(self, queue):
        scheduled = await _schedule(queue, NOW + timedelta(days=10))
        assert [t.value for t in scheduled] == REMINDERS + PAST_DUE
        delays = {job.type: delay for job, delay in queue.scheduled}
        assert delays == {
            "reminder_7d": timedelta(days=3),
            "reminder_3d": timedelta(days=7),
            "reminder_1d": timedelta(days=9),
            "past_due": timedelta(days=10),
            "past_due_7": timedelta(days=17),
        }

    async def test_twelve_hours_out_skips_every_reminder(self, queue):
        scheduled = await _schedule(queue, NOW + timedelta(hours=12))
        assert scheduled == [JobType.PAST_DUE, JobType.PAST_DUE_7]

    async def test_payload_carries_correlation_fields(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        job, _ = queue.scheduled[0]
        assert job.capital_call_item_id == str(ITEM)
        assert job.investor_id == str(INVESTOR)
        assert job.fund_id == str(FUND)
        assert job.scheduled_at == NOW


# Precise boundary at each of the five offsets: a fire time equal to now is
# not in the future, one second later is.
BOUNDARIES = [
    (timedelta(days=7), ["reminder_3d", "reminder_1d", "past_due", "past_due_7"]),
    (timedelta(days=7, seconds=1), REMINDERS + PAST_DUE),
    (timedelta(days=3), ["reminder_1d", "past_due", "past_due_7"]),
    (timedelta(days=3, seconds=1), ["reminder_3d", "reminder_1d", "past_due", "past_due_7"]),
    (timedelta(days=1), ["past_due", "past_due_7"]),
    (timedelta(days=1, seconds=1), ["reminder_1d", "past_due", "past_due_7"]),
    (timedelta(0), ["past_due_7"]),
    (timedelta(seconds=1), ["past_due", "past_due_7"]),
    (timedelta(days=-7), []),
    (timedelta(days=-7, seconds=1), ["past_due_7"]),
]


@pytest.mark.parametrize("until_deadline,expected", BOUNDARIES)
async def test_scheduling_window_boundaries(queue, until_deadline, expected):
    scheduled = await _schedule(queue, NOW + until_deadline)
    assert [t.value for t in scheduled] == expected
    assert [job.type for job, _ in queue.scheduled] == expected
    assert all(delay > timedelta(0) for _, delay in queue.scheduled)


class TestScheduleDegraded:
    async def test_unavailable_queue_schedules_nothing(self, queue, caplog):
        queue.available = False
        scheduled = await _schedule(queue, NOW + timedelta(days=10))
        assert scheduled == []
        assert queue.calls == 0
        assert "unavailable" in caplog.text

    async def test_rejected_submissions_are_not_reported(self, queue):
        async def refuse(job, delay):
            return None

        queue.schedule = refuse
        assert await _schedule(queue, NOW + timedelta(days=10)) == []

    async def test_stops_once_queue_goes_unavailable(self, queue, caplog):
        attempts = []

        async def time_out(job, delay):
            attempts.append(job.type)
            queue.available = False
            return None

        queue.schedule = time_out
        assert await _schedule(queue, NOW + timedelta(days=10)) == []
        assert attempts == ["reminder_7d"]
        assert "went unavailable" in caplog.text


# ── cancellation ─────────────────────────────────────────────────────────────

class TestCancelByTypes:
    async def test_returns_count_cancelled(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        scheduler = CapitalCallScheduler(queue)
        assert await scheduler.cancel_by_types(ITEM, job_types_for(JobClass.REMINDER)) == 3
        assert queue.outstanding_types(ITEM) == set(PAST_DUE)

    async def test_idempotent(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        scheduler = CapitalCallScheduler(queue)
        first = await scheduler.cancel_by_types(ITEM, ALL_JOB_TYPES)
        second = await scheduler.cancel_by_types(ITEM, ALL_JOB_TYPES)
        assert first == 5
        assert 0 <= second <= first
        assert second == 0

    async def test_fewer_than_scheduled_when_some_fired(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        # reminder_7d fired and claimed its key
        del queue.outstanding[("reminder_7d", str(ITEM))]
        assert await CapitalCallScheduler(queue).cancel_by_types(ITEM, ALL_JOB_TYPES) == 4

    async def test_unavailable_queue_is_a_noop(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        queue.available = False
        assert await CapitalCallScheduler(queue).cancel_by_types(ITEM, ALL_JOB_TYPES) == 0
        assert len(queue.outstanding_types(ITEM)) == 5

    async def test_no_job_types_is_a_noop(self, queue):
        assert await CapitalCallScheduler(queue).cancel_by_types(ITEM, []) == 0
        assert queue.calls == 0

    async def test_single_bulk_request(self, queue):
        await CapitalCallScheduler(queue).cancel_by_types(ITEM, ALL_JOB_TYPES)
        assert queue.cancel_requests == [(REMINDERS + PAST_DUE, str(ITEM))]


# ── status change policy ────────────────────────────────────────────────────

class TestHandleStatusChange:
    async def test_complete_cancels_reminders_and_past_due(self, queue):
        await CapitalCallScheduler(queue).handle_status_change(ITEM, "complete", "partial")
        assert queue.cancel_requests == [(REMINDERS + PAST_DUE, str(ITEM))]

    async def test_complete_from_pending(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        assert await CapitalCallScheduler(queue).handle_status_change(ITEM, "complete", "pending") == 5
        assert queue.outstanding_types(ITEM) == set()

    async def test_defaulted_cancels_only_past_due(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        await CapitalCallScheduler(queue).handle_status_change(ITEM, "defaulted", "sent")
        assert queue.cancel_requests == [(PAST_DUE, str(ITEM))]
        assert queue.outstanding_types(ITEM) == set(REMINDERS)

    async def test_cancelled_cancels_everything(self, queue):
        await CapitalCallScheduler(queue).handle_status_change(ITEM, "cancelled", "pending")
        assert queue.cancel_requests == [(REMINDERS + PAST_DUE, str(ITEM))]

    async def test_partial_payment_keeps_reminders(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        assert await CapitalCallScheduler(queue).handle_status_change(ITEM, "partial", "pending") == 0
        assert queue.cancel_requests == []
        assert len(queue.outstanding_types(ITEM)) == 5

    async def test_repeat_is_safe(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        scheduler = CapitalCallScheduler(queue)
        assert await scheduler.handle_status_change(ITEM, "complete", "partial") == 5
        assert await scheduler.handle_status_change(ITEM, "complete", "partial") == 0

    async def test_accepts_enum_members(self, queue):
        await _schedule(queue, NOW + timedelta(days=10))
        cancelled = await CapitalCallScheduler(queue).handle_status_change(
            ITEM, ItemStatus.COMPLETE, ItemStatus.PARTIAL
        )
        assert cancelled == 5
        assert queue.outstanding_types(ITEM) == set()

    def test_no_transition_cancels_nothing(self):
        assert cancellation_policy("complete", "complete") == ()
