"""
Capital call status rules.

Call level:   draft → sent → partial ⇄ funded → closed
Item level:   pending → partial → complete

The call status is derived from the full item set every time an item's
received amount changes; nothing is maintained incrementally.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable

from fundops.services.errors import InvalidStatusTransition


class CallStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIAL = "partial"
    FUNDED = "funded"
    CLOSED = "closed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"


CALL_TRANSITIONS: dict[CallStatus, frozenset[CallStatus]] = {
    CallStatus.DRAFT: frozenset({CallStatus.SENT}),
    CallStatus.SENT: frozenset({CallStatus.PARTIAL, CallStatus.FUNDED}),
    CallStatus.PARTIAL: frozenset({CallStatus.PARTIAL, CallStatus.FUNDED, CallStatus.CLOSED}),
    CallStatus.FUNDED: frozenset({CallStatus.PARTIAL, CallStatus.FUNDED, CallStatus.CLOSED}),
    CallStatus.CLOSED: frozenset(),
}

_ITEM_RANK = {ItemStatus.PENDING: 0, ItemStatus.PARTIAL: 1, ItemStatus.COMPLETE: 2}


def ensure_call_transition(current: str, target: str) -> CallStatus:
    """Validate a call transition and return the target status."""
    cur, tgt = CallStatus(current), CallStatus(target)
    if tgt not in CALL_TRANSITIONS[cur]:
        raise InvalidStatusTransition("capital call", cur.value, tgt.value)
    return tgt


def item_status_for(amount_due: Decimal, amount_received: Decimal) -> ItemStatus:
    if amount_received >= amount_due:
        return ItemStatus.COMPLETE
    if amount_received > 0:
        return ItemStatus.PARTIAL
    return ItemStatus.PENDING


def next_item_status(current: str, amount_due: Decimal, amount_received: Decimal) -> ItemStatus:
    """Item status after a received-amount change. Never moves backwards."""
    cur = ItemStatus(current)
    derived = item_status_for(amount_due, amount_received)
    if _ITEM_RANK[derived] < _ITEM_RANK[cur]:
        # Corrections that lower the received amount are not modelled here
        return cur
    return derived


@dataclass(frozen=True)
class ItemSnapshot:
    amount_due: Decimal
    amount_received: Decimal
    status: str


def aggregate_received(items: Iterable[ItemSnapshot]) -> Decimal:
    return sum((i.amount_received or Decimal(0) for i in items), Decimal(0))


def aggregate_call_status(
    current: str,
    total_amount: Decimal,
    items: Iterable[ItemSnapshot],
) -> CallStatus:
    """Derive the call status from its items.

    Only sent, partial and funded calls follow the money; draft and closed
    calls keep their status.
    """
    cur = CallStatus(current)
    if cur in (CallStatus.DRAFT, CallStatus.CLOSED):
        return cur

    items = list(items)
    received = aggregate_received(items)
    if received >= total_amount:
        return CallStatus.FUNDED

    moved = any(ItemStatus(i.status) is not ItemStatus.PENDING for i in items)
    if moved or cur is not CallStatus.SENT:
        return CallStatus.PARTIAL
    return cur
