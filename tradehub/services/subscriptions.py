"""Tradesperson subscriptions: subscribe and the cancel/reactivate/auto-renew/change-plan actions.

Renewals and Stripe-side status changes arrive later through the webhook
reconciler; this module only handles what the tradesperson asks for.
"""

import calendar
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId

from tradehub.core.audit import log_event
from tradehub.core.exceptions import BadRequestError, ForbiddenError
from tradehub.core.logging import get_logger
from tradehub.core.security import parse_object_id
from tradehub.models.credit_ledger import LedgerTransactionType, RelatedModel
from tradehub.models.subscription_plan import BillingPeriod, SubscriptionPlan
from tradehub.models.transaction import Transaction, TransactionStatus, TransactionType
from tradehub.models.user import SubscriptionState, SubscriptionStatus, User, UserRole
from tradehub.services import credits as credits_service
from tradehub.services import stripe_client
from tradehub.services.notifications import notify

log = get_logger(__name__)

ACTIONS = ("cancel", "reactivate", "toggle-autorenew", "change-plan")


def _add_period(start: datetime, period: BillingPeriod) -> datetime:
    """One calendar month or year after start, clamped to the last day of a short month."""
    if period == BillingPeriod.YEAR:
        year, month = start.year + 1, start.month
    else:
        year, month = start.year + (start.month // 12), start.month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def plan_view(plan: SubscriptionPlan) -> dict[str, Any]:
    return {
        "id": str(plan.id),
        "name": plan.name,
        "description": plan.description,
        "price": plan.price,
        "currency": plan.currency,
        "billing_period": plan.billing_period,
        "credits": plan.credits_per_period,
        "features": plan.features,
    }


def _require_tradesperson(user: User, action: str) -> None:
    if user.role != UserRole.TRADESPERSON:
        raise ForbiddenError(f"Only tradespeople can {action}")


async def _load_plan(plan_id: str | None) -> SubscriptionPlan:
    if not plan_id:
        raise BadRequestError("Missing plan ID")
    plan = await SubscriptionPlan.get(parse_object_id(plan_id, "plan ID"))
    if not plan or not plan.is_active:
        raise BadRequestError("Invalid subscription plan")
    return plan


async def list_plans() -> list[dict[str, Any]]:
    plans = (
        await SubscriptionPlan.find(SubscriptionPlan.is_active == True)  # noqa: E712
        .sort(+SubscriptionPlan.display_order, +SubscriptionPlan.price)
        .to_list()
    )
    return [plan_view(p) for p in plans]


def _state_view(state: SubscriptionState, plan: SubscriptionPlan | None) -> dict[str, Any]:
    return {
        "current_plan": plan_view(plan) if plan else None,
        "status": state.status,
        "start_date": state.start_date.isoformat() if state.start_date else None,
        "next_billing_date": state.end_date.isoformat() if state.end_date else None,
        "auto_renew": state.auto_renew,
        "stripe_subscription_id": state.stripe_subscription_id,
    }


async def get_current_subscription(user: User) -> dict[str, Any]:
    _require_tradesperson(user, "have subscriptions")
    if not user.subscription:
        return {"current_plan": None, "message": "No active subscription found"}
    plan = await SubscriptionPlan.get(user.subscription.plan_id)
    return _state_view(user.subscription, plan)


async def _grant_subscription_credits(
    user: User,
    credits: int,
    notes: str,
    metadata: dict[str, Any],
    plan_id: PydanticObjectId,
) -> int:
    """Record a subscription Transaction and add its credits; returns the new balance."""
    transaction = Transaction(
        user_id=user.id,
        amount=credits,
        type=TransactionType.SUBSCRIPTION,
        status=TransactionStatus.COMPLETED,
        description=notes,
        metadata=metadata,
        related_id=plan_id,
        related_type="Subscription",
    )
    await transaction.insert()
    _, account = await credits_service.add_credits(
        user.id,
        credits,
        LedgerTransactionType.SUBSCRIPTION,
        related_to=transaction.id,
        related_model=RelatedModel.TRANSACTION,
        notes=notes,
    )
    return account.available


async def subscribe(user: User, plan_id: str | None) -> dict[str, Any]:
    _require_tradesperson(user, "subscribe to plans")
    plan = await _load_plan(plan_id)
    if user.subscription and user.subscription.status == SubscriptionStatus.ACTIVE:
        raise BadRequestError("User already has an active subscription")
    if not plan.stripe_price_id:
        raise BadRequestError("Subscription plan is not available for billing")

    if not user.stripe_customer_id:
        customer = await stripe_client.create_customer(
            email=user.email,
            name=user.full_name,
            metadata={"userId": str(user.id)},
        )
        user.stripe_customer_id = customer["id"]
        await user.set({User.stripe_customer_id: customer["id"]})

    stripe_subscription = await stripe_client.create_subscription(
        customer=user.stripe_customer_id,
        items=[{"price": plan.stripe_price_id}],
        metadata={"userId": str(user.id), "planId": str(plan.id)},
    )

    start = datetime.utcnow()
    state = SubscriptionState(
        plan_id=plan.id,
        status=SubscriptionStatus.ACTIVE,
        start_date=start,
        end_date=_add_period(start, plan.billing_period),
        auto_renew=True,
        stripe_subscription_id=stripe_subscription["id"],
    )
    await user.set({User.subscription: state.model_dump(), User.updated_at: start})
    user.subscription = state

    available = user.credits.available
    if plan.credits_per_period > 0:
        available = await _grant_subscription_credits(
            user,
            plan.credits_per_period,
            f"{plan.credits_per_period} credits from {plan.name} subscription",
            {"subscriptionId": stripe_subscription["id"], "planId": str(plan.id)},
            plan.id,
        )

    log.info("subscription_started", user_id=str(user.id), plan=plan.name, stripe_subscription_id=stripe_subscription["id"])
    await log_event(user.id, "subscription_started", "subscription", stripe_subscription["id"], {"plan_id": str(plan.id)})
    await notify(user, "subscription_started", plan=plan.name, credits=plan.credits_per_period)
    return {
        "message": f"Successfully subscribed to {plan.name} plan",
        "subscription": _state_view(state, plan),
        "credits": {"available": available, "added": plan.credits_per_period},
    }


async def _cancel(state: SubscriptionState) -> str:
    if state.stripe_subscription_id:
        await stripe_client.modify_subscription(state.stripe_subscription_id, cancel_at_period_end=True)
    state.status = SubscriptionStatus.CANCELED
    state.auto_renew = False
    return "Subscription canceled successfully"


async def _reactivate(state: SubscriptionState) -> str:
    if state.status != SubscriptionStatus.CANCELED:
        raise BadRequestError("Only canceled subscriptions can be reactivated")
    if state.stripe_subscription_id:
        await stripe_client.modify_subscription(state.stripe_subscription_id, cancel_at_period_end=False)
    state.status = SubscriptionStatus.ACTIVE
    state.auto_renew = True
    return "Subscription reactivated successfully"


async def _toggle_autorenew(state: SubscriptionState) -> str:
    auto_renew = not state.auto_renew
    if state.stripe_subscription_id:
        await stripe_client.modify_subscription(state.stripe_subscription_id, cancel_at_period_end=not auto_renew)
    state.auto_renew = auto_renew
    if auto_renew and state.status == SubscriptionStatus.CANCELED:
        state.status = SubscriptionStatus.ACTIVE
    return "Auto-renewal enabled successfully" if auto_renew else "Auto-renewal disabled successfully"


async def _change_plan(user: User, state: SubscriptionState, new_plan: SubscriptionPlan, old_plan: SubscriptionPlan | None) -> int:
    """Swap the Stripe price with prorations; returns the credit difference granted (0 on downgrade)."""
    if state.stripe_subscription_id:
        if not new_plan.stripe_price_id:
            raise BadRequestError("Subscription plan is not available for billing")
        current = await stripe_client.retrieve_subscription(state.stripe_subscription_id)
        item_id = current["items"]["data"][0]["id"]
        await stripe_client.modify_subscription(
            state.stripe_subscription_id,
            items=[{"id": item_id, "price": new_plan.stripe_price_id}],
            metadata={"planId": str(new_plan.id)},
            proration_behavior="create_prorations",
        )
    start = datetime.utcnow()
    state.plan_id = new_plan.id
    state.status = SubscriptionStatus.ACTIVE
    state.start_date = start
    state.end_date = _add_period(start, new_plan.billing_period)

    difference = new_plan.credits_per_period - (old_plan.credits_per_period if old_plan else 0)
    if difference <= 0:
        return 0
    await _grant_subscription_credits(
        user,
        difference,
        f"{difference} additional credits from upgrading to {new_plan.name} subscription",
        {"subscriptionId": state.stripe_subscription_id, "planId": str(new_plan.id), "planUpgrade": True},
        new_plan.id,
    )
    return difference


async def update_subscription(user: User, action: str | None, plan_id: str | None = None) -> dict[str, Any]:
    _require_tradesperson(user, "manage subscriptions")
    if not action:
        raise BadRequestError("Missing action parameter")
    if action not in ACTIONS:
        raise BadRequestError(f"Unknown action: {action}")
    if not user.subscription:
        raise BadRequestError("No active subscription found")

    state = user.subscription.model_copy()
    plan = await SubscriptionPlan.get(state.plan_id)
    previous_status = state.status
    credit_difference = 0

    if action == "cancel":
        message = await _cancel(state)
    elif action == "reactivate":
        message = await _reactivate(state)
    elif action == "toggle-autorenew":
        message = await _toggle_autorenew(state)
    else:
        new_plan = await _load_plan(plan_id)
        credit_difference = await _change_plan(user, state, new_plan, plan)
        plan = new_plan
        message = f"Successfully changed to {new_plan.name} plan"

    await user.set({User.subscription: state.model_dump(), User.updated_at: datetime.utcnow()})
    user.subscription = state

    log.info("subscription_updated", user_id=str(user.id), action=action, status=state.status, auto_renew=state.auto_renew)
    await log_event(user.id, "subscription_changed", "subscription", state.stripe_subscription_id, {"action": action})
    if state.status != previous_status:
        await notify(user, "subscription_changed", status=state.status.value)
    return {
        "message": message,
        **_state_view(state, plan),
        "credit_difference": credit_difference,
    }

