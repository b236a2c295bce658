"""Stripe webhook reconciler: idempotency, renewals, status sync and the swallow policy."""

import time
from datetime import datetime

import orjson
import pytest

from conftest import make_plan, make_user, stripe_signature

pytestmark = pytest.mark.asyncio


def _event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _payment_intent(user, intent_id: str = "pi_123", credits: int = 25) -> dict:
    return {
        "id": intent_id,
        "amount": 1999,
        "currency": "usd",
        "payment_method": "pm_card_visa",
        "metadata": {"userId": str(user.id), "packageId": "standard", "credits": str(credits)},
    }


async def _subscribed_user(plan, email: str = "sub@example.com", status: str = "active"):
    from tradehub.models.user import SubscriptionState, SubscriptionStatus
    return await make_user(
        email,
        subscription=SubscriptionState(
            plan_id=plan.id,
            status=SubscriptionStatus(status),
            start_date=datetime(2026, 1, 1),
            end_date=datetime(2026, 2, 1),
            stripe_subscription_id="sub_123",
        ),
    )


async def test_payment_succeeded_credits_once():
    from tradehub.models.transaction import Transaction
    from tradehub.models.user import User
    from tradehub.services import webhooks
    user = await make_user("buyer@example.com", credits=2)
    event = _event("payment_intent.succeeded", _payment_intent(user))

    assert await webhooks.dispatch_event(event) is True
    assert await webhooks.dispatch_event(event) is True

    stored = await User.get(user.id)
    assert stored.credits.available == 27
    assert stored.credits.last_purchase.amount == 25
    transactions = await Transaction.find(Transaction.external_id == "pi_123").to_list()
    assert len(transactions) == 1
    assert transactions[0].status == "completed"
    assert transactions[0].price == 19.99
    assert stored.credits.history[-1].related_to == transactions[0].id


async def test_payment_succeeded_unique_index_blocks_race(monkeypatch):
    from tradehub.models.user import User
    from tradehub.services import payments, webhooks
    user = await make_user("buyer@example.com")
    event = _event("payment_intent.succeeded", _payment_intent(user))
    await webhooks.dispatch_event(event)

    # Second delivery that slipped past the lookup
    async def no_existing(external_id):
        return None

    monkeypatch.setattr(payments, "find_transaction", no_existing)
    assert await webhooks.dispatch_event(event) is True
    stored = await User.get(user.id)
    assert stored.credits.available == 25


async def test_payment_failed_records_failed_transaction():
    from tradehub.models.transaction import Transaction
    from tradehub.models.user import User
    from tradehub.services import webhooks
    user = await make_user("buyer@example.com", credits=2)
    intent = _payment_intent(user, "pi_fail")
    intent["last_payment_error"] = {"message": "Your card was declined."}

    assert await webhooks.dispatch_event(_event("payment_intent.payment_failed", intent)) is True

    transaction = await Transaction.find_one(Transaction.external_id == "pi_fail:failed")
    assert transaction.status == "failed"
    assert transaction.metadata["error"] == "Your card was declined."
    stored = await User.get(user.id)
    assert stored.credits.available == 2


async def test_failed_then_succeeded_intent_is_still_captured():
    from tradehub.models.transaction import Transaction
    from tradehub.models.user import User
    from tradehub.services import webhooks
    user = await make_user("buyer@example.com")
    intent = _payment_intent(user, "pi_retry")
    await webhooks.dispatch_event(_event("payment_intent.payment_failed", intent, event_id="evt_a"))
    await webhooks.dispatch_event(_event("payment_intent.succeeded", intent, event_id="evt_b"))

    stored = await User.get(user.id)
    assert stored.credits.available == 25
    statuses = sorted(t.status for t in await Transaction.find_all().to_list())
    assert statuses == ["completed", "failed"]


async def test_grant_failure_leaves_nothing_and_replay_credits(monkeypatch):
    from tradehub.models.failed_event import FailedEvent
    from tradehub.models.transaction import Transaction
    from tradehub.models.user import User
    from tradehub.services import credits as credits_service
    from tradehub.services import webhooks
    user = await make_user("buyer@example.com")
    event = _event("payment_intent.succeeded", _payment_intent(user), event_id="evt_flaky")
    real_add_credits = credits_service.add_credits
    calls = []

    async def add_credits_once_broken(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("primary stepped down")
        return await real_add_credits(*args, **kwargs)

    monkeypatch.setattr(credits_service, "add_credits", add_credits_once_broken)

    assert await webhooks.dispatch_event(event) is False
    assert await Transaction.find_all().count() == 0
    assert (await User.get(user.id)).credits.available == 0
    assert await FailedEvent.find_one(FailedEvent.reference_id == "evt_flaky") is not None

    # Stripe redelivery, or a replay of the dead letter
    assert await webhooks.dispatch_event(event) is True
    stored = await User.get(user.id)
    assert stored.credits.available == 25
    assert await Transaction.find(Transaction.external_id == "pi_123").count() == 1


async def test_renewal_failure_rolls_back_credits(monkeypatch):
    from tradehub.models.transaction import Transaction
    from tradehub.models.user import User
    from tradehub.services import webhooks
    plan = await make_plan(credits=10)
    user = await _subscribed_user(plan, status="past_due")
    invoice = {"id": "in_renew_2", "subscription": "sub_123", "billing_reason": "subscription_cycle"}
    real_set_fields = webhooks._set_subscription_fields

    async def broken_set_fields(*args, **kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(webhooks, "_set_subscription_fields", broken_set_fields)
    assert await webhooks.dispatch_event(_event("invoice.payment_succeeded", invoice)) is False
    stored = await User.get(user.id)
    assert stored.credits.available == 0
    assert len(stored.credits.history) == 0
    assert await Transaction.find_all().count() == 0

    monkeypatch.setattr(webhooks, "_set_subscription_fields", real_set_fields)
    assert await webhooks.dispatch_event(_event("invoice.payment_succeeded", invoice)) is True
    stored = await User.get(user.id)
    assert stored.credits.available == 10
    assert stored.subscription.status == "active"


async def test_handler_failure_is_dead_lettered():
    from beanie import PydanticObjectId
    from tradehub.models.failed_event import FailedEvent
    from tradehub.models.transaction import Transaction
    from tradehub.services import webhooks

    class Ghost:
        id = PydanticObjectId()

    event = _event("payment_intent.succeeded", _payment_intent(Ghost()), event_id="evt_ghost")
    assert await webhooks.dispatch_event(event) is False

    failed = await FailedEvent.find_one(FailedEvent.reference_id == "evt_ghost")
    assert failed.source == "stripe_webhook"
    assert failed.name == "payment_intent.succeeded"
    assert "NotFoundError" in failed.reason
    assert await Transaction.find_all().count() == 0


async def test_renewal_invoice_grants_plan_credits_and_extends_period():
    from tradehub.models.transaction import Transaction
    from tradehub.models.user import User
    from tradehub.services import webhooks
    plan = await make_plan(credits=10)
    user = await _subscribed_user(plan, status="past_due")
    period_end = 1772323200  # 2026-03-01T00:00:00Z
    invoice = {
        "id": "in_renew_1",
        "subscription": "sub_123",
        "billing_reason": "subscription_cycle",
        "amount_paid": 2999,
        "lines": {"data": [{"period": {"start": 1769904000, "end": period_end}}]},
    }
    event = _event("invoice.payment_succeeded", invoice)

    assert await webhooks.dispatch_event(event) is True
    assert await webhooks.dispatch_event(event) is True

    stored = await User.get(user.id)
    assert stored.credits.available == 10
    assert stored.credits.history[-1].transaction_type == "subscription"
    assert stored.subscription.end_date == datetime(2026, 3, 1)
    assert stored.subscription.status == "active"
    assert await Transaction.find(Transaction.external_id == "in_renew_1").count() == 1


async def test_initial_invoice_is_not_a_renewal():
    from tradehub.models.user import User
    from tradehub.services import webhooks
    plan = await make_plan(credits=10)
    user = await _subscribed_user(plan)
    invoice = {"id": "in_first", "subscription": "sub_123", "billing_reason": "subscription_create"}

    assert await webhooks.dispatch_event(_event("invoice.payment_succeeded", invoice)) is True
    stored = await User.get(user.id)
    assert stored.credits.available == 0


async def test_invoice_failed_marks_past_due():
    from tradehub.models.user import User
    from tradehub.services import webhooks
    plan = await make_plan()
    user = await _subscribed_user(plan)
    await webhooks.dispatch_event(_event("invoice.payment_failed", {"id": "in_2", "subscription": "sub_123"}))
    stored = await User.get(user.id)
    assert stored.subscription.status == "past_due"


async def test_subscription_updated_syncs_status_and_auto_renew():
    from tradehub.models.user import User
    from tradehub.services import webhooks
    plan = await make_plan()
    user = await _subscribed_user(plan)
    subscription = {"id": "sub_123", "status": "unpaid", "cancel_at_period_end": True}

    await webhooks.dispatch_event(_event("customer.subscription.updated", subscription))

    stored = await User.get(user.id)
    assert stored.subscription.status == "unpaid"
    assert stored.subscription.auto_renew is False


async def test_subscription_updated_keeps_unmapped_status():
    from tradehub.models.user import User
    from tradehub.services import webhooks
    plan = await make_plan()
    user = await _subscribed_user(plan)
    subscription = {"id": "sub_123", "status": "incomplete", "cancel_at_period_end": False}

    await webhooks.dispatch_event(_event("customer.subscription.updated", subscription))

    stored = await User.get(user.id)
    assert stored.subscription.status == "active"
    assert stored.subscription.auto_renew is True


async def test_subscription_deleted_expires():
    from tradehub.models.user import User
    from tradehub.services import webhooks
    plan = await make_plan()
    user = await _subscribed_user(plan)
    await webhooks.dispatch_event(_event("customer.subscription.deleted", {"id": "sub_123"}))
    stored = await User.get(user.id)
    assert stored.subscription.status == "expired"
    assert stored.subscription.auto_renew is False


async def test_unknown_event_type_is_acknowledged():
    from tradehub.services import webhooks
    assert await webhooks.dispatch_event(_event("charge.refunded", {"id": "ch_1"})) is True


async def test_endpoint_rejects_bad_signature(client):
    payload = orjson.dumps(_event("charge.refunded", {"id": "ch_1"}))
    r = await client.post(
        "/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload, secret="whsec_wrong")},
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "BAD_REQUEST"

    r = await client.post("/v1/webhooks/stripe", content=payload)
    assert r.status_code == 400


async def test_endpoint_rejects_stale_timestamp(client):
    payload = orjson.dumps(_event("charge.refunded", {"id": "ch_1"}))
    stale = int(time.time()) - 3600
    r = await client.post(
        "/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload, timestamp=stale)},
    )
    assert r.status_code == 400


async def test_endpoint_processes_signed_event(client):
    from tradehub.models.user import User
    user = await make_user("buyer@example.com")
    payload = orjson.dumps(_event("payment_intent.succeeded", _payment_intent(user, credits=10)))
    r = await client.post(
        "/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload), "Content-Type": "application/json"},
    )
    assert r.status_code == 200
    assert r.json() == {"received": True}
    stored = await User.get(user.id)
    assert stored.credits.available == 10


async def test_endpoint_acknowledges_handler_failure(client):
    from beanie import PydanticObjectId
    payload = orjson.dumps(
        _event(
            "payment_intent.succeeded",
            {"id": "pi_x", "amount": 999, "metadata": {"userId": str(PydanticObjectId()), "credits": "10"}},
        )
    )
    r = await client.post(
        "/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload)},
    )
    assert r.status_code == 200
    assert r.json() == {"received": True, "warning": "Processed with errors"}
