from datetime import datetime
from typing import Any

from pydantic import BaseModel


class NotificationJob(BaseModel):
    """Payload handed to the notification dispatch task.

    ``type`` is either a scheduled job type (``reminder_7d`` ... ``past_due_7``)
    or an immediate notice kind (``capital_call_request``, ``wire_confirmation``,
    ``wire_issue``, ``capital_call_summary``).
    """

    type: str
    capital_call_item_id: str | None = None
    investor_id: str | None = None
    fund_id: str
    scheduled_at: datetime
    metadata: dict[str, Any] = {}
