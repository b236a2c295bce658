"""Credit account embedded in the tradesperson's user document.

`history` is the source of truth; `available` and `spent` are counters that are
only ever changed by the same atomic update that pushes the matching entry
(see tradehub.services.credits).
"""

from datetime import datetime
from enum import Enum

from beanie import PydanticObjectId
from pydantic import BaseModel, ConfigDict, Field


class LedgerTransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    EXPIRATION = "expiration"
    SUBSCRIPTION = "subscription"


class RelatedModel(str, Enum):
    JOB = "Job"
    APPLICATION = "Application"
    TRANSACTION = "Transaction"
    SUBSCRIPTION = "Subscription"


class LedgerEntry(BaseModel):
    # Stored inside $push updates, so enums are kept as plain values
    model_config = ConfigDict(use_enum_values=True)

    entry_id: PydanticObjectId = Field(default_factory=PydanticObjectId)
    amount: int  # positive = credit added, negative = credit consumed
    transaction_type: LedgerTransactionType
    related_to: PydanticObjectId | None = None
    related_model: RelatedModel | None = None
    date: datetime = Field(default_factory=datetime.utcnow)
    notes: str | None = None


class LastPurchase(BaseModel):
    amount: int
    transaction_id: PydanticObjectId | None = None
    date: datetime = Field(default_factory=datetime.utcnow)


class CreditAccount(BaseModel):
    available: int = 0
    spent: int = 0
    history: list[LedgerEntry] = Field(default_factory=list)
    last_purchase: LastPurchase | None = None
