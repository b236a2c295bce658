from datetime import datetime
from enum import Enum

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELED = "canceled"
    EXPIRED = "expired"


class JobBudget(BaseModel):
    type: str = "negotiable"  # fixed | hourly | negotiable
    min_amount: float | None = None
    max_amount: float | None = None
    currency: str = "USD"


class Job(Document):
    title: str
    description: str = ""
    customer_id: PydanticObjectId
    status: JobStatus = JobStatus.OPEN
    budget: JobBudget = Field(default_factory=JobBudget)
    credit_cost: int = 1
    applications: list[PydanticObjectId] = Field(default_factory=list)
    application_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "jobs"
        indexes = [
            [("customer_id", 1)],
            [("status", 1), ("created_at", -1)],
        ]
