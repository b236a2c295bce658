from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    SUBSCRIPTION = "subscription"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Transaction(Document):
    """Financial/credit audit record. One per Stripe payment intent or invoice (external_id)."""

    user_id: PydanticObjectId
    amount: int  # signed credits
    price: float | None = None  # real currency, purchases only
    currency: str = "USD"
    type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    description: str = ""
    payment_method_id: str | None = None
    external_id: str | None = None  # idempotency key: Stripe payment intent / invoice id
    metadata: dict[str, Any] = Field(default_factory=dict)
    related_id: PydanticObjectId | None = None
    related_type: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions"
        # Missing external_id must stay absent (not null) for the sparse unique index
        keep_nulls = False
        indexes = [
            IndexModel([("external_id", ASCENDING)], name="external_id_unique", unique=True, sparse=True),
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)], name="user_created"),
            IndexModel([("status", ASCENDING), ("type", ASCENDING)], name="status_type"),
        ]
