"""Purchase capture: client-side verification and the webhook share one idempotency key."""

import pytest

from conftest import make_user

pytestmark = pytest.mark.asyncio


def _intent(user, intent_id: str = "pi_777", status: str = "succeeded", credits: int = 10) -> dict:
    return {
        "id": intent_id,
        "status": status,
        "amount": 999,
        "currency": "usd",
        "payment_method": "pm_card_visa",
        "metadata": {"userId": str(user.id), "packageId": "basic", "credits": str(credits)},
    }


@pytest.fixture
def stripe_intents(monkeypatch):
    """Serve retrieve_payment_intent from a dict keyed by intent id."""
    from tradehub.services import stripe_client
    intents: dict[str, dict] = {}

    async def retrieve_payment_intent(payment_intent_id):
        return intents[payment_intent_id]

    monkeypatch.setattr(stripe_client, "retrieve_payment_intent", retrieve_payment_intent)
    return intents


async def test_verify_then_webhook_credits_once(stripe_intents):
    from tradehub.models.transaction import Transaction
    from tradehub.models.user import User
    from tradehub.services import payments, webhooks
    user = await make_user("buyer@example.com", credits=1)
    intent = _intent(user)
    stripe_intents["pi_777"] = intent

    result = await payments.verify_payment(user, "pi_777")
    assert result["success"] is True
    assert result["already_processed"] is False
    assert result["credits"] == 10

    event = {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": intent}}
    assert await webhooks.dispatch_event(event) is True

    stored = await User.get(user.id)
    assert stored.credits.available == 11
    assert await Transaction.find(Transaction.external_id == "pi_777").count() == 1


async def test_webhook_then_verify_reports_already_processed(stripe_intents):
    from tradehub.models.user import User
    from tradehub.services import payments, webhooks
    user = await make_user("buyer@example.com")
    intent = _intent(user)
    stripe_intents["pi_777"] = intent
    await webhooks.dispatch_event({"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": intent}})

    result = await payments.verify_payment(user, "pi_777")

    assert result["already_processed"] is True
    assert result["credits"] == 10
    assert (await User.get(user.id)).credits.available == 10


async def test_verify_rejects_unfinished_payment(stripe_intents):
    from tradehub.core.exceptions import BadRequestError
    from tradehub.models.user import User
    from tradehub.services import payments
    user = await make_user("buyer@example.com")
    stripe_intents["pi_777"] = _intent(user, status="requires_payment_method")

    with pytest.raises(BadRequestError):
        await payments.verify_payment(user, "pi_777")
    assert (await User.get(user.id)).credits.available == 0


async def test_verify_rejects_someone_elses_payment(stripe_intents):
    from tradehub.core.exceptions import ForbiddenError
    from tradehub.models.user import User
    from tradehub.services import payments
    owner = await make_user("owner@example.com")
    other = await make_user("other@example.com")
    stripe_intents["pi_777"] = _intent(owner)

    with pytest.raises(ForbiddenError):
        await payments.verify_payment(other, "pi_777")
    assert (await User.get(owner.id)).credits.available == 0
    assert (await User.get(other.id)).credits.available == 0


async def test_customers_cannot_verify(stripe_intents):
    from tradehub.core.exceptions import ForbiddenError
    from tradehub.services import payments
    customer = await make_user("carol@example.com", role="customer")
    with pytest.raises(ForbiddenError):
        await payments.verify_payment(customer, "pi_777")
