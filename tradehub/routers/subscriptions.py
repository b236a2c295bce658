from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tradehub.deps import get_current_user
from tradehub.models.user import User
from tradehub.services import subscriptions as subscriptions_service

router = APIRouter()


class SubscribeRequest(BaseModel):
    plan_id: str | None = None


class UpdateSubscriptionRequest(BaseModel):
    action: str | None = None  # cancel | reactivate | toggle-autorenew | change-plan
    plan_id: str | None = None


@router.get("/plans")
async def list_plans():
    return {"plans": await subscriptions_service.list_plans()}


@router.get("")
async def current_subscription(user: User = Depends(get_current_user)):
    return await subscriptions_service.get_current_subscription(user)


@router.post("")
async def subscribe(body: SubscribeRequest, user: User = Depends(get_current_user)):
    return await subscriptions_service.subscribe(user, body.plan_id)


@router.put("")
async def update_subscription(body: UpdateSubscriptionRequest, user: User = Depends(get_current_user)):
    return await subscriptions_service.update_subscription(user, body.action, body.plan_id)
