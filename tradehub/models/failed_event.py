"""Dead-letter: failed worker jobs and webhook events kept for inspection and replay."""

from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class FailedEvent(Document):
    source: str  # "stripe_webhook" | "worker"
    name: str  # event type or job name
    reference_id: str  # Stripe event id or arq job id
    payload: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    retries: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_events"
        indexes = [[("source", 1), ("name", 1)], [("created_at", -1)]]
