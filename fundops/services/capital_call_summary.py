"""Capital call summary for fund managers.

Celery beat task that walks every active (sent / partial) capital call,
groups them by fund and hands one ``capital_call_summary`` notice per call to
the notification service, honoring each fund's summary frequency:

    daily    every run
    weekly   Mondays only
    none     never
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy import select

from fundops.core.clock import as_utc, utcnow
from fundops.core.config import settings
from fundops.core.database import sync_session
from fundops.models.capital_call import CapitalCall, CapitalCallItem
from fundops.models.fund import Deal, Fund
from fundops.schemas.notification import NotificationJob
from fundops.services.capital_call_state import CallStatus, ItemSnapshot, ItemStatus
from fundops.services.notifications import send_notification
from fundops.worker import celery_app

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (CallStatus.SENT.value, CallStatus.PARTIAL.value)
_MONDAY = 0


@dataclass(frozen=True)
class CapitalCallStats:
    capital_call_id: uuid.UUID
    total_called: Decimal
    total_received: Decimal
    percent_received: int
    total_outstanding: Decimal
    total_past_due: Decimal


def calculate_call_stats(
    call_id: uuid.UUID,
    deadline: datetime,
    items: Iterable[ItemSnapshot],
    now: datetime,
) -> CapitalCallStats:
    items = list(items)
    total_called = sum((i.amount_due for i in items), Decimal(0))
    total_received = sum((i.amount_received or Decimal(0) for i in items), Decimal(0))

    # Past due = unpaid remainder of open items once the deadline has passed
    total_past_due = Decimal(0)
    if as_utc(now) > as_utc(deadline):
        total_past_due = sum(
            (
                i.amount_due - (i.amount_received or Decimal(0))
                for i in items
                if i.status in (ItemStatus.PENDING.value, ItemStatus.PARTIAL.value)
            ),
            Decimal(0),
        )

    percent = 0
    if total_called > 0:
        percent = int((total_received / total_called * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))

    return CapitalCallStats(
        capital_call_id=call_id,
        total_called=total_called,
        total_received=total_received,
        percent_received=percent,
        total_outstanding=total_called - total_received,
        total_past_due=total_past_due,
    )


def should_send_summary(frequency: str | None, weekday: int) -> bool:
    """``weekday`` follows datetime.weekday(): Monday is 0."""
    frequency = frequency or "daily"
    if frequency == "daily":
        return True
    if frequency == "weekly":
        return weekday == _MONDAY
    return False


@celery_app.task(name="fundops.services.capital_call_summary.send_capital_call_summaries")
def send_capital_call_summaries() -> int:
    """Daily manager summary of active capital calls. Returns notices delivered."""
    now = utcnow()
    logger.info("Building capital call summaries")

    with sync_session() as db:
        calls = db.execute(
            select(CapitalCall)
            .where(CapitalCall.status.in_(_ACTIVE_STATUSES))
            .order_by(CapitalCall.created_at)
        ).scalars().all()

        if not calls:
            logger.info("No active capital calls")
            return 0

        by_fund: dict[uuid.UUID, list[CapitalCall]] = defaultdict(list)
        for call in calls:
            by_fund[call.fund_id].append(call)

        sent = 0
        for fund_id, fund_calls in by_fund.items():
            fund = db.get(Fund, fund_id)
            frequency = fund.capital_call_summary_frequency if fund else None
            if not should_send_summary(frequency, now.weekday()):
                logger.debug("Skipping fund %s (frequency: %s)", fund_id, frequency)
                continue

            for call in fund_calls:
                items = db.execute(
                    select(CapitalCallItem).where(CapitalCallItem.capital_call_id == call.id)
                ).scalars().all()
                stats = calculate_call_stats(
                    call.id,
                    call.deadline,
                    [ItemSnapshot(i.amount_due, i.amount_received, i.status) for i in items],
                    now,
                )
                deal = db.get(Deal, call.deal_id)
                job = NotificationJob(
                    type="capital_call_summary",
                    fund_id=str(fund_id),
                    scheduled_at=now,
                    metadata={
                        "capital_call_id": str(call.id),
                        "fund_name": fund.name if fund else None,
                        "deal_name": deal.name if deal else None,
                        "total_called": str(stats.total_called),
                        "total_received": str(stats.total_received),
                        "percent_received": stats.percent_received,
                        "total_outstanding": str(stats.total_outstanding),
                        "total_past_due": str(stats.total_past_due),
                        "report_url": f"{settings.frontend_url}/manager/capital-calls/{call.id}",
                    },
                )
                if send_notification(job.model_dump(mode="json")):
                    sent += 1
                else:
                    logger.error("Failed to send summary for capital call %s", call.id)

    logger.info("Capital call summaries sent: %d", sent)
    return sent
