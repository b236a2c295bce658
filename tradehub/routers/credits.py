from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tradehub.core.pagination import paginate
from tradehub.deps import get_current_user, require_tradesperson
from tradehub.models.user import User
from tradehub.services import credits as credits_service
from tradehub.services import payments as payments_service

router = APIRouter()


class CreatePaymentRequest(BaseModel):
    package_id: str


@router.get("")
async def credits_summary(user: User = Depends(get_current_user)):
    """Balance plus the ten most recent transactions."""
    return await payments_service.get_credit_summary(user)


@router.get("/history")
async def credits_history(
    user: User = Depends(require_tradesperson),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    limit, offset = paginate(limit, offset)
    entries = credits_service.get_credit_history(user, limit, offset)
    return {
        "available": user.credits.available,
        "spent": user.credits.spent,
        "history": [e.model_dump(mode="json") for e in entries],
        "limit": limit,
        "offset": offset,
    }


@router.get("/packages")
async def credit_packages():
    return {"packages": [credits_service.get_package(pid) for pid in credits_service.CREDIT_PACKAGES]}


@router.post("/payment")
async def create_payment(body: CreatePaymentRequest, user: User = Depends(get_current_user)):
    """Create a Stripe PaymentIntent; credits land on /verify or when the payment webhook arrives."""
    return await payments_service.create_payment_intent(user, body.package_id)


class VerifyPaymentRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)


@router.post("/verify")
async def verify_payment(body: VerifyPaymentRequest, user: User = Depends(get_current_user)):
    """Capture a confirmed payment now; idempotent with the payment webhook."""
    return await payments_service.verify_payment(user, body.payment_intent_id)
