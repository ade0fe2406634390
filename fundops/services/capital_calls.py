"""
Capital call service.

Ties allocation, persistence, the status rules and the notification
scheduler together for the operations a manager or a payment event drives:

  create_capital_call      allocate → persist → notify + schedule → sent
  confirm_wire_received    item amount/status → aggregate → cancel jobs
  handle_status_change     cancel jobs for any observed item transition
  close_capital_call       partial|funded → closed, stop all contact
  update_deadline          move the deadline and rebuild the cascade
  report_wire_issue        one-off notice, no state change

Financial errors propagate to the caller.  Notification errors stop at the
queue client and only show up in the logs.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fundops.core.clock import as_utc, utcnow
from fundops.core.config import settings
from fundops.core.queue import DelayedTaskQueue, get_task_queue
from fundops.models.capital_call import CapitalCall, CapitalCallItem
from fundops.models.fund import Deal, DealOwnership, Fund
from fundops.schemas.capital_call import (
    CapitalCallItemResponse,
    CapitalCallResponse,
    CapitalCallWithItems,
)
from fundops.schemas.notification import NotificationJob
from fundops.services.allocation import Participant, allocate
from fundops.services.capital_call_scheduler import (
    ALL_JOB_TYPES,
    CANCELLED,
    CapitalCallScheduler,
)
from fundops.services.capital_call_state import (
    CallStatus,
    ItemSnapshot,
    ItemStatus,
    aggregate_call_status,
    ensure_call_transition,
    next_item_status,
)
from fundops.services.errors import (
    AggregationUnavailable,
    CapitalCallError,
    InvalidAllocationInput,
    InvalidWireAmount,
    NotFound,
)

logger = logging.getLogger(__name__)


def _money(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class CapitalCallService:
    def __init__(self, db: AsyncSession, queue: DelayedTaskQueue | None = None):
        self.db = db
        self.queue = queue if queue is not None else get_task_queue()
        self.scheduler = CapitalCallScheduler(self.queue)

    # ── Lookups ───────────────────────────────────────────────────────────────

    async def _get_call(self, call_id: uuid.UUID, *, for_update: bool = False) -> CapitalCall:
        stmt = select(CapitalCall).where(CapitalCall.id == call_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        call = (await self.db.execute(stmt)).scalar_one_or_none()
        if call is None:
            raise NotFound(f"Capital call {call_id} not found")
        return call

    async def _get_item(self, item_id: uuid.UUID, *, for_update: bool = False) -> CapitalCallItem:
        stmt = select(CapitalCallItem).where(CapitalCallItem.id == item_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        item = (await self.db.execute(stmt)).scalar_one_or_none()
        if item is None:
            raise NotFound(f"Capital call item {item_id} not found")
        return item

    async def get_items(self, call_id: uuid.UUID) -> list[CapitalCallItem]:
        result = await self.db.execute(
            select(CapitalCallItem)
            .where(CapitalCallItem.capital_call_id == call_id)
            .order_by(CapitalCallItem.created_at, CapitalCallItem.id)
        )
        return list(result.scalars().all())

    async def get_capital_call(self, call_id: uuid.UUID) -> CapitalCallWithItems:
        call = await self._get_call(call_id)
        items = await self.get_items(call_id)
        return CapitalCallWithItems(
            call=CapitalCallResponse.model_validate(call),
            items=[CapitalCallItemResponse.model_validate(i) for i in items],
        )

    async def call_number(self, call: CapitalCall) -> int:
        """Sequential number of the call within its fund, by creation order."""
        ids = (
            await self.db.execute(
                select(CapitalCall.id)
                .where(CapitalCall.fund_id == call.fund_id)
                .order_by(CapitalCall.created_at, CapitalCall.id)
            )
        ).scalars().all()
        return ids.index(call.id) + 1 if call.id in ids else len(ids) + 1

    async def _participants(self, deal_id: uuid.UUID) -> list[Participant]:
        # Always read fresh: ownership can change between calls
        rows = (
            await self.db.execute(
                select(DealOwnership)
                .where(DealOwnership.deal_id == deal_id)
                .order_by(DealOwnership.investor_id)
            )
        ).scalars().all()
        return [
            Participant(investor_id=r.investor_id, ownership_fraction=r.ownership_fraction)
            for r in rows
            if r.ownership_fraction != 0
        ]

    # ── Create ────────────────────────────────────────────────────────────────

    async def create_capital_call(
        self,
        fund_id: uuid.UUID,
        deal_id: uuid.UUID,
        total_amount: Decimal,
        deadline: datetime,
        *,
        now: datetime | None = None,
    ) -> CapitalCallWithItems:
        now = as_utc(now or utcnow())
        deadline = as_utc(deadline)
        total = _money(total_amount)

        deal = await self.db.get(Deal, deal_id)
        if deal is None or deal.fund_id != fund_id:
            raise NotFound("Deal not found or does not belong to this fund")

        participants = await self._participants(deal_id)
        if participants:
            # Raises before anything is written
            allocations = allocate(total, participants)
        else:
            if total <= 0:
                raise InvalidAllocationInput(f"Total amount must be positive, got {total}")
            allocations = []

        call = CapitalCall(
            fund_id=fund_id,
            deal_id=deal_id,
            total_amount=total,
            deadline=deadline,
            status=CallStatus.DRAFT.value,
            created_at=now,
        )
        self.db.add(call)
        await self.db.flush()

        items: list[CapitalCallItem] = []
        failed: list[uuid.UUID] = []
        for allocation in allocations:
            item = CapitalCallItem(
                capital_call_id=call.id,
                investor_id=allocation.investor_id,
                amount_due=allocation.amount_due,
                amount_received=Decimal("0"),
                status=ItemStatus.PENDING.value,
                reminder_count=0,
                created_at=now,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(item)
            except SQLAlchemyError as exc:
                # One investor's failure must not void the others' obligations
                logger.error(
                    "Failed to create capital call item for investor %s on call %s: %s",
                    allocation.investor_id, call.id, exc,
                )
                failed.append(allocation.investor_id)
                continue
            items.append(item)

        await self.db.commit()

        if not items:
            logger.warning(
                "Capital call %s has no participating investors - left in draft", call.id
            )
        else:
            await self._send_call(call, items, deal, now)

        return CapitalCallWithItems(
            call=CapitalCallResponse.model_validate(call),
            items=[CapitalCallItemResponse.model_validate(i) for i in items],
            failed_investor_ids=failed,
        )

    async def _send_call(
        self,
        call: CapitalCall,
        items: list[CapitalCallItem],
        deal: Deal,
        now: datetime,
    ) -> None:
        """Hand off every investor notice, schedule the cascade, then mark the call sent."""
        fund = await self.db.get(Fund, call.fund_id)
        number = await self.call_number(call)

        for item in items:
            await self._send_notice(
                "capital_call_request",
                item,
                call,
                now,
                amount_due=str(item.amount_due),
                deadline=as_utc(call.deadline).isoformat(),
                deal_name=deal.name,
                capital_call_number=number,
                reference_code=f"CC-{number}-{str(item.investor_id)[:8].upper()}",
                wire_instructions=fund.wire_instructions if fund else None,
                wire_instructions_url=f"{settings.frontend_url}/investor/capital-calls/{call.id}",
            )
            await self.scheduler.schedule_all(
                item.id, item.investor_id, call.fund_id, call.deadline, now
            )

        # Delivery outcome doesn't matter: the obligation exists either way
        call.status = ensure_call_transition(call.status, CallStatus.SENT.value).value
        call.sent_at = now
        await self.db.commit()
        logger.info("Capital call %s sent to %d investor(s)", call.id, len(items))

    async def _send_notice(
        self,
        kind: str,
        item: CapitalCallItem,
        call: CapitalCall,
        now: datetime,
        **metadata: Any,
    ) -> str | None:
        job = NotificationJob(
            type=kind,
            capital_call_item_id=str(item.id),
            investor_id=str(item.investor_id),
            fund_id=str(call.fund_id),
            scheduled_at=now,
            metadata={"capital_call_id": str(call.id), **metadata},
        )
        handle = await self.queue.dispatch(job)
        if handle is None:
            logger.warning("%s notice for capital call item %s was not handed off", kind, item.id)
        return handle

    # ── Payments and aggregation ──────────────────────────────────────────────

    async def _apply_aggregate(self, call: CapitalCall) -> CallStatus:
        try:
            rows = (
                await self.db.execute(
                    select(CapitalCallItem).where(CapitalCallItem.capital_call_id == call.id)
                )
            ).scalars().all()
        except SQLAlchemyError as exc:
            raise AggregationUnavailable(
                f"Could not read items of capital call {call.id}"
            ) from exc

        snapshots = [ItemSnapshot(r.amount_due, r.amount_received, r.status) for r in rows]
        target = aggregate_call_status(call.status, call.total_amount, snapshots)
        if target.value != call.status:
            ensure_call_transition(call.status, target.value)
            logger.info("Capital call %s: %s → %s", call.id, call.status, target.value)
            call.status = target.value
        return target

    async def recompute_call_status(self, call_id: uuid.UUID) -> CallStatus:
        """Re-derive the call status from its current items and persist it."""
        call = await self._get_call(call_id, for_update=True)
        try:
            status = await self._apply_aggregate(call)
        except AggregationUnavailable:
            await self.db.rollback()
            raise
        await self.db.commit()
        return status

    async def confirm_wire_received(
        self,
        item_id: uuid.UUID,
        amount_received: Decimal,
        timestamp: datetime,
    ) -> CapitalCallItem:
        """Record a wire against an item; the amount adds to what was already received."""
        amount = _money(amount_received)
        if amount <= 0:
            raise InvalidWireAmount(f"Wire amount must be positive, got {amount}")

        # Lock order call → item, so concurrent wires on one call serialize
        call_id = (await self._get_item(item_id)).capital_call_id
        call = await self._get_call(call_id, for_update=True)
        item = await self._get_item(item_id, for_update=True)

        old_status = item.status
        item.amount_received = (item.amount_received or Decimal(0)) + amount
        if item.amount_received > item.amount_due:
            logger.warning(
                "Capital call item %s received %s against %s due - over-payment recorded as is",
                item.id, item.amount_received, item.amount_due,
            )
        item.status = next_item_status(old_status, item.amount_due, item.amount_received).value
        item.wire_received_at = as_utc(timestamp)

        try:
            await self.db.flush()
            await self._apply_aggregate(call)
        except AggregationUnavailable:
            await self.db.rollback()
            raise
        await self.db.commit()

        if item.status != old_status:
            await self.scheduler.handle_status_change(item.id, item.status, old_status)

        await self._send_notice(
            "wire_confirmation",
            item,
            call,
            as_utc(timestamp),
            amount_received=str(amount),
            total_received=str(item.amount_received),
            capital_call_number=await self.call_number(call),
        )
        return item

    async def handle_status_change(
        self,
        item_id: uuid.UUID,
        new_status: str,
        old_status: str,
    ) -> int:
        return await self.scheduler.handle_status_change(item_id, new_status, old_status)

    # ── Manager actions ───────────────────────────────────────────────────────

    async def close_capital_call(self, call_id: uuid.UUID) -> CapitalCall:
        call = await self._get_call(call_id, for_update=True)
        call.status = ensure_call_transition(call.status, CallStatus.CLOSED.value).value
        await self.db.commit()
        logger.info("Capital call %s closed", call.id)

        for item in await self.get_items(call.id):
            if item.status != ItemStatus.COMPLETE.value:
                await self.scheduler.handle_status_change(item.id, CANCELLED, item.status)
        return call

    async def update_deadline(
        self,
        call_id: uuid.UUID,
        new_deadline: datetime,
        *,
        now: datetime | None = None,
    ) -> CapitalCall:
        now = as_utc(now or utcnow())
        call = await self._get_call(call_id, for_update=True)
        if call.status == CallStatus.CLOSED.value:
            raise CapitalCallError(f"Capital call {call.id} is closed; its deadline is final")

        call.deadline = as_utc(new_deadline)
        await self.db.commit()

        if call.status == CallStatus.DRAFT.value:
            # Nothing scheduled yet
            return call

        for item in await self.get_items(call.id):
            if item.status == ItemStatus.COMPLETE.value:
                continue
            await self.scheduler.cancel_by_types(item.id, ALL_JOB_TYPES)
            await self.scheduler.schedule_all(
                item.id, item.investor_id, call.fund_id, call.deadline, now
            )
        logger.info("Capital call %s deadline moved to %s", call.id, call.deadline.isoformat())
        return call

    async def report_wire_issue(
        self,
        item_id: uuid.UUID,
        description: str,
        expected_amount: Decimal | None = None,
        received_amount: Decimal | None = None,
        *,
        now: datetime | None = None,
    ) -> str | None:
        item = await self._get_item(item_id)
        call = await self._get_call(item.capital_call_id)
        return await self._send_notice(
            "wire_issue",
            item,
            call,
            as_utc(now or utcnow()),
            issue_description=description,
            expected_amount=str(expected_amount) if expected_amount is not None else None,
            received_amount=str(received_amount) if received_amount is not None else None,
            capital_call_number=await self.call_number(call),
        )
