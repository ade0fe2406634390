import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from fundops.core.clock import utcnow
from fundops.core.database import Base


class CapitalCall(Base):
    __tablename__ = "capital_calls"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    fund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("funds.id", ondelete="CASCADE"), index=True
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), index=True
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(
        String(20), default="draft"
    )  # draft | sent | partial | funded | closed
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class CapitalCallItem(Base):
    __tablename__ = "capital_call_items"
    __table_args__ = (UniqueConstraint("capital_call_id", "investor_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    capital_call_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("capital_calls.id", ondelete="CASCADE"), index=True
    )
    investor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("investors.id"), index=True
    )
    amount_due: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    amount_received: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    status: Mapped[str] = mapped_column(
        String(20), default="pending"
    )  # pending | partial | complete
    wire_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reminder_count: Mapped[int] = mapped_column(Integer, default=0)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
