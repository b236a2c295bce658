from datetime import datetime
from enum import Enum

from beanie import Document, Indexed
from pydantic import Field


class BillingPeriod(str, Enum):
    MONTH = "month"
    YEAR = "year"


class SubscriptionPlan(Document):
    """Static catalog entry; Stripe ids link the plan to its recurring price."""

    name: Indexed(str, unique=True)
    description: str = ""
    price: float = Field(ge=0)
    currency: str = "USD"
    billing_period: BillingPeriod = BillingPeriod.MONTH
    credits_per_period: int = Field(default=0, ge=0)
    features: list[str] = Field(default_factory=list)
    is_active: bool = True
    display_order: int = 0
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "subscription_plans"
        indexes = [[("is_active", 1), ("display_order", 1)]]
