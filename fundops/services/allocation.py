"""
Capital call allocation.

Splits a fund-level call across the investors of a deal by ownership
fraction.  Each share is rounded half-even to the cent; the rounding drift
between the shares and the call total is left as is.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Sequence

from fundops.services.errors import InvalidAllocationInput

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class Participant:
    investor_id: uuid.UUID
    ownership_fraction: Decimal


@dataclass(frozen=True)
class Allocation:
    investor_id: uuid.UUID
    amount_due: Decimal


def _to_decimal(value) -> Decimal:
    # str() first so floats like 0.6 don't carry binary noise
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round_currency(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_EVEN)


def allocate(total_amount: Decimal, participants: Sequence[Participant]) -> list[Allocation]:
    """Return one allocation per participant, in input order.

    Raises InvalidAllocationInput for a non-positive total, an empty
    participant set, or any fraction outside (0, 1].
    """
    total = _to_decimal(total_amount)
    if total <= 0:
        raise InvalidAllocationInput(f"Total amount must be positive, got {total}")
    if not participants:
        raise InvalidAllocationInput("Cannot allocate a capital call with no participants")

    fractions = []
    for p in participants:
        fraction = _to_decimal(p.ownership_fraction)
        if not Decimal(0) < fraction <= Decimal(1):
            raise InvalidAllocationInput(
                f"Ownership fraction {fraction} for investor {p.investor_id} is outside (0, 1]"
            )
        fractions.append(fraction)

    fraction_sum = sum(fractions, Decimal(0))
    if fraction_sum > 1:
        logger.warning(
            "Ownership fractions sum to %s (> 1) across %d participants; "
            "allocations will exceed the call total",
            fraction_sum, len(participants),
        )

    return [
        Allocation(investor_id=p.investor_id, amount_due=round_currency(total * fraction))
        for p, fraction in zip(participants, fractions)
    ]
