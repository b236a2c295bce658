"""Stripe webhook reconciler: signature check, then idempotent per-event handlers.

Handlers that grant credits first look up a Transaction by `external_id`, then
insert it and apply the grant as one unit of work (payments.record_once). The
unique index on `external_id` turns a racing second delivery into a no-op, and a
grant that fails takes its Transaction with it so the redelivery starts clean.
Handler failures are acknowledged to Stripe (no retry storm) but logged,
dead-lettered in `failed_events` and reported to Sentry.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import orjson
import stripe

from tradehub.core.audit import log_event
from tradehub.core.config import get_settings
from tradehub.core.exceptions import BadRequestError, NotFoundError
from tradehub.core.logging import get_logger
from tradehub.core.observability import report_exception
from tradehub.db.session import UnitOfWork
from tradehub.models.credit_ledger import LedgerTransactionType, RelatedModel
from tradehub.models.failed_event import FailedEvent
from tradehub.models.subscription_plan import SubscriptionPlan
from tradehub.models.transaction import Transaction, TransactionStatus, TransactionType
from tradehub.models.user import SubscriptionStatus, User
from tradehub.services import credits as credits_service
from tradehub.services import payments as payments_service
from tradehub.services.notifications import notify

log = get_logger(__name__)

# Stripe subscription status -> local status; anything else keeps the local value
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "past_due": SubscriptionStatus.PAST_DUE,
}

RENEWAL_BILLING_REASON = "subscription_cycle"


def verify_event(payload: bytes, signature: str | None) -> dict[str, Any]:
    """Verify the Stripe-Signature header and return the decoded event envelope."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        log.error("stripe_webhook_secret_missing")
        raise BadRequestError("Webhook secret not configured")
    if not signature:
        raise BadRequestError("Stripe-Signature header missing")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        log.warning("stripe_signature_invalid", reason=str(e))
        raise BadRequestError("Invalid webhook signature") from e
    try:
        event = orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        raise BadRequestError("Invalid webhook payload") from e
    if not isinstance(event, dict) or "type" not in event:
        raise BadRequestError("Invalid webhook payload")
    return event


async def _user_by_subscription(stripe_subscription_id: str) -> User | None:
    return await User.find_one({"subscription.stripe_subscription_id": stripe_subscription_id})


async def _set_subscription_fields(user: User, fields: dict[str, Any], session=None) -> None:
    await User.find_one({"_id": user.id}).update(
        {"$set": {**{f"subscription.{k}": v for k, v in fields.items()}, "updated_at": datetime.utcnow()}},
        session=session,
    )


async def handle_payment_succeeded(payment_intent: dict[str, Any]) -> None:
    await payments_service.capture_purchase(payment_intent)


async def handle_payment_failed(payment_intent: dict[str, Any]) -> None:
    intent_id = payment_intent["id"]
    metadata = payment_intent.get("metadata") or {}
    # Own key, so a later successful retry of the same intent is still captured
    external_id = f"{intent_id}:failed"
    if await payments_service.find_transaction(external_id):
        log.info("stripe_event_duplicate", external_id=external_id, source="lookup")
        return
    credits = int(metadata.get("credits") or 0)
    error = (payment_intent.get("last_payment_error") or {}).get("message") or "Payment failed"
    transaction = Transaction(
        user_id=payments_service.metadata_user_id(metadata.get("userId")),
        amount=credits,
        price=payment_intent.get("amount", 0) / 100,
        type=TransactionType.PURCHASE,
        status=TransactionStatus.FAILED,
        description=f"Failed purchase of {credits} credits",
        payment_method_id=payment_intent.get("payment_method"),
        external_id=external_id,
        metadata={"stripePaymentIntentId": intent_id, "packageId": metadata.get("packageId"), "error": error},
    )
    if await payments_service.record_once(transaction):
        log.info("payment_failed_recorded", user_id=str(transaction.user_id), payment_intent_id=intent_id)


async def handle_subscription_created(subscription: dict[str, Any]) -> None:
    # Initial credits are granted by the subscribe call itself, not here
    user_id = (subscription.get("metadata") or {}).get("userId")
    if not user_id:
        log.warning("stripe_subscription_without_user", subscription_id=subscription["id"])
        return
    user = await User.get(payments_service.metadata_user_id(user_id))
    if not user:
        log.warning("stripe_subscription_user_missing", subscription_id=subscription["id"], user_id=user_id)
        return
    log.info("stripe_subscription_created", subscription_id=subscription["id"], user_id=user_id)


async def handle_subscription_updated(subscription: dict[str, Any]) -> None:
    user = await _user_by_subscription(subscription["id"])
    if not user or not user.subscription:
        log.warning("stripe_subscription_user_missing", subscription_id=subscription["id"])
        return
    status = STRIPE_STATUS_MAP.get(subscription.get("status"), user.subscription.status)
    auto_renew = not subscription.get("cancel_at_period_end", False)
    await _set_subscription_fields(user, {"status": status.value, "auto_renew": auto_renew})
    log.info("stripe_subscription_updated", subscription_id=subscription["id"], user_id=str(user.id), status=status.value, auto_renew=auto_renew)
    if status != user.subscription.status:
        await notify(user, "subscription_changed", status=status.value)


async def handle_subscription_deleted(subscription: dict[str, Any]) -> None:
    user = await _user_by_subscription(subscription["id"])
    if not user:
        log.warning("stripe_subscription_user_missing", subscription_id=subscription["id"])
        return
    await _set_subscription_fields(user, {"status": SubscriptionStatus.EXPIRED.value, "auto_renew": False})
    log.info("stripe_subscription_expired", subscription_id=subscription["id"], user_id=str(user.id))
    await log_event(user.id, "subscription_expired", "subscription", subscription["id"])
    await notify(user, "subscription_changed", status=SubscriptionStatus.EXPIRED.value)


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    # Newer API versions move the id under parent.subscription_details
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _invoice_period_end(invoice: dict[str, Any]) -> datetime | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    end = (lines[0].get("period") or {}).get("end")
    return datetime.fromtimestamp(end, tz=timezone.utc).replace(tzinfo=None) if end else None


async def handle_invoice_payment_succeeded(invoice: dict[str, Any]) -> None:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        log.debug("stripe_invoice_not_subscription", invoice_id=invoice["id"])
        return
    if invoice.get("billing_reason") != RENEWAL_BILLING_REASON:
        log.info("stripe_invoice_not_renewal", invoice_id=invoice["id"], billing_reason=invoice.get("billing_reason"))
        return
    if await payments_service.find_transaction(invoice["id"]):
        log.info("stripe_event_duplicate", external_id=invoice["id"], source="lookup")
        return
    user = await _user_by_subscription(subscription_id)
    if not user or not user.subscription:
        raise NotFoundError(f"User with subscription {subscription_id} not found")
    plan = await SubscriptionPlan.get(user.subscription.plan_id)
    if not plan:
        raise NotFoundError(f"Subscription plan {user.subscription.plan_id} not found")
    credits = plan.credits_per_period
    notes = f"{credits} credits from {plan.name} subscription renewal"
    transaction = Transaction(
        user_id=user.id,
        amount=credits,
        price=(invoice.get("amount_paid") or 0) / 100,
        type=TransactionType.SUBSCRIPTION,
        status=TransactionStatus.COMPLETED,
        description=notes,
        external_id=invoice["id"],
        metadata={"subscriptionId": subscription_id, "invoiceId": invoice["id"]},
        related_id=plan.id,
        related_type="Subscription",
    )
    fields: dict[str, Any] = {"status": SubscriptionStatus.ACTIVE.value}
    period_end = _invoice_period_end(invoice)
    if period_end:
        fields["end_date"] = period_end
    previous = {"status": user.subscription.status.value, "end_date": user.subscription.end_date}

    async def _renew(uow: UnitOfWork) -> None:
        if credits > 0:
            entry, _ = await credits_service.add_credits(
                user.id,
                credits,
                LedgerTransactionType.SUBSCRIPTION,
                related_to=transaction.id,
                related_model=RelatedModel.TRANSACTION,
                notes=notes,
                session=uow.session,
            )

            async def _revert_entry() -> None:
                await credits_service.revert_ledger_entry(user.id, entry)

            uow.on_rollback(_revert_entry)
        await _set_subscription_fields(user, fields, session=uow.session)

        async def _restore_period() -> None:
            await _set_subscription_fields(user, previous)

        uow.on_rollback(_restore_period)

    if not await payments_service.record_once(transaction, _renew):
        return
    log.info("stripe_subscription_renewed", user_id=str(user.id), subscription_id=subscription_id, credits=credits, end_date=period_end and period_end.isoformat())
    await log_event(user.id, "subscription_renewed", "subscription", subscription_id, {"credits": credits, "invoice_id": invoice["id"]})
    await notify(user, "subscription_renewed", credits=credits)


async def handle_invoice_payment_failed(invoice: dict[str, Any]) -> None:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        log.debug("stripe_invoice_not_subscription", invoice_id=invoice["id"])
        return
    user = await _user_by_subscription(subscription_id)
    if not user:
        log.warning("stripe_subscription_user_missing", subscription_id=subscription_id)
        return
    await _set_subscription_fields(user, {"status": SubscriptionStatus.PAST_DUE.value})
    log.info("stripe_subscription_past_due", subscription_id=subscription_id, user_id=str(user.id))
    await notify(user, "subscription_payment_failed")


HANDLERS: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
    "payment_intent.succeeded": handle_payment_succeeded,
    "payment_intent.payment_failed": handle_payment_failed,
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


async def _dead_letter(event: dict[str, Any], exc: Exception) -> None:
    try:
        await FailedEvent(
            source="stripe_webhook",
            name=event.get("type", ""),
            reference_id=event.get("id", ""),
            payload=event,
            reason=f"{type(exc).__name__}: {exc}"[:2000],
        ).insert()
    except Exception:
        log.exception("stripe_event_dead_letter_failed", event_id=event.get("id"))
    report_exception(exc, stripe_event_type=event.get("type", ""))


async def dispatch_event(event: dict[str, Any]) -> bool:
    """Run the handler for event; False when it failed (the failure is recorded, not raised)."""
    event_type = event.get("type")
    handler = HANDLERS.get(event_type)
    if handler is None:
        log.info("stripe_event_ignored", event_id=event.get("id"), event_type=event_type)
        return True
    log.info("stripe_event_received", event_id=event.get("id"), event_type=event_type)
    try:
        await handler(event["data"]["object"])
    except Exception as e:
        log.exception("stripe_event_failed", event_id=event.get("id"), event_type=event_type)
        await _dead_letter(event, e)
        return False
    return True
