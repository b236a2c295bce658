from datetime import datetime
from enum import Enum

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field

from tradehub.models.credit_ledger import CreditAccount


class UserRole(str, Enum):
    CUSTOMER = "customer"
    TRADESPERSON = "tradesperson"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    CANCELED = "canceled"
    EXPIRED = "expired"
    UNPAID = "unpaid"
    PAST_DUE = "past_due"


class SubscriptionState(BaseModel):
    """Tradesperson's current plan; mutated by user actions and by Stripe webhooks."""

    plan_id: PydanticObjectId
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    start_date: datetime | None = None
    end_date: datetime | None = None
    auto_renew: bool = True
    stripe_subscription_id: str | None = None


class User(Document):
    email: Indexed(str, unique=True)
    first_name: str = ""
    last_name: str = ""
    role: UserRole = UserRole.CUSTOMER
    business_name: str | None = None
    is_verified: bool = False
    is_active: bool = True
    stripe_customer_id: str | None = None
    credits: CreditAccount = Field(default_factory=CreditAccount)
    subscription: SubscriptionState | None = None
    session_version: int = 0
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_tradesperson(self) -> bool:
        return self.role == UserRole.TRADESPERSON

    class Settings:
        name = "users"
        indexes = [
            [("role", 1), ("is_verified", 1)],
            [("subscription.stripe_subscription_id", 1)],
        ]
