from datetime import datetime
from enum import Enum

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field, model_validator
from pymongo import ASCENDING, IndexModel


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    SHORTLISTED = "shortlisted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


ACTIVE_STATUSES = (
    ApplicationStatus.PENDING,
    ApplicationStatus.SHORTLISTED,
    ApplicationStatus.ACCEPTED,
    ApplicationStatus.REJECTED,
)


class BidType(str, Enum):
    FIXED = "fixed"
    HOURLY = "hourly"
    NEGOTIABLE = "negotiable"


class Bid(BaseModel):
    type: BidType
    amount: float | None = Field(default=None, ge=0)
    currency: str = "USD"
    estimated_hours: float | None = Field(default=None, ge=0)
    estimated_days: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _amount_unless_negotiable(self) -> "Bid":
        if self.type != BidType.NEGOTIABLE and self.amount is None:
            raise ValueError("Bid amount is required unless the bid is negotiable")
        return self


class Availability(BaseModel):
    can_start_on: datetime | None = None
    available_days: list[str] = Field(default_factory=list)
    preferred_start: str | None = None  # "09:00"
    preferred_end: str | None = None  # "17:00"


class ApplicationNotes(BaseModel):
    customer: str | None = None
    tradesperson: str | None = None
    internal: str | None = None


class StatusChange(BaseModel):
    status: ApplicationStatus
    changed_at: datetime = Field(default_factory=datetime.utcnow)
    changed_by: PydanticObjectId | None = None
    note: str | None = None


class Application(Document):
    job_id: PydanticObjectId
    tradesperson_id: PydanticObjectId
    status: ApplicationStatus = ApplicationStatus.PENDING
    cover_letter: str
    bid: Bid
    availability: Availability = Field(default_factory=Availability)
    additional_details: str | None = None
    notes: ApplicationNotes = Field(default_factory=ApplicationNotes)
    withdrawal_reason: str | None = None
    customer_viewed: bool = False
    credit_deducted: bool = False
    credit_transaction_id: PydanticObjectId | None = None
    status_history: list[StatusChange] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    def transition(self, status: ApplicationStatus, changed_by: PydanticObjectId | None, note: str | None = None) -> None:
        """Set status and append to the audit trail; history is never rewritten."""
        now = datetime.utcnow()
        self.status = status
        self.status_history.append(StatusChange(status=status, changed_at=now, changed_by=changed_by, note=note))
        self.last_updated = now

    class Settings:
        name = "applications"
        indexes = [
            # One live application per (job, tradesperson); withdrawn ones fall out of the index
            IndexModel(
                [("job_id", ASCENDING), ("tradesperson_id", ASCENDING)],
                name="job_tradesperson_active_unique",
                unique=True,
                partialFilterExpression={"status": {"$in": [s.value for s in ACTIVE_STATUSES]}},
            ),
            [("job_id", 1), ("status", 1)],
            [("tradesperson_id", 1), ("status", 1)],
            [("submitted_at", -1)],
        ]
