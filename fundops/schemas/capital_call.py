import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class CapitalCallCreate(BaseModel):
    fund_id: uuid.UUID
    deal_id: uuid.UUID
    total_amount: Decimal = Field(gt=0)
    deadline: datetime


class WireConfirmation(BaseModel):
    amount_received: Decimal = Field(gt=0)
    received_at: datetime


class WireIssueReport(BaseModel):
    description: str
    expected_amount: Decimal | None = None
    received_amount: Decimal | None = None


class CapitalCallResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    fund_id: uuid.UUID
    deal_id: uuid.UUID
    total_amount: Decimal
    deadline: datetime
    status: str  # draft | sent | partial | funded | closed
    sent_at: datetime | None
    created_at: datetime


class CapitalCallItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    capital_call_id: uuid.UUID
    investor_id: uuid.UUID
    amount_due: Decimal
    amount_received: Decimal
    status: str  # pending | partial | complete
    wire_received_at: datetime | None
    reminder_count: int
    last_reminder_at: datetime | None
    created_at: datetime


class CapitalCallWithItems(BaseModel):
    call: CapitalCallResponse
    items: list[CapitalCallItemResponse]
    # Investors whose item could not be written; the call proceeds without them
    failed_investor_ids: list[uuid.UUID] = []
