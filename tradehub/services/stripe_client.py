"""Async seam over the synchronous Stripe SDK.

Calls run in a worker thread so they never block the event loop; Stripe errors
become ExternalServiceError so routes answer 502 with the processor's message.
"""

import asyncio
from typing import Any, Callable

import stripe

from tradehub.core.config import get_settings
from tradehub.core.exceptions import BadRequestError, ExternalServiceError
from tradehub.core.logging import get_logger

log = get_logger(__name__)


def _api_key() -> str:
    key = get_settings().stripe_secret_key
    if not key:
        raise BadRequestError("Payments not configured")
    return key


async def _call(func: Callable[..., Any], *args, **params) -> Any:
    params["api_key"] = _api_key()
    try:
        return await asyncio.to_thread(func, *args, **params)
    except stripe.StripeError as e:
        log.error(
            "stripe_api_error",
            operation=getattr(func, "__qualname__", str(func)),
            error_type=type(e).__name__,
            error_code=getattr(e, "code", None),
            error_message=getattr(e, "user_message", None) or str(e),
        )
        raise ExternalServiceError(getattr(e, "user_message", None) or "Payment processing error") from e


async def create_customer(**params) -> Any:
    return await _call(stripe.Customer.create, **params)


async def create_payment_intent(**params) -> Any:
    return await _call(stripe.PaymentIntent.create, **params)


async def create_subscription(**params) -> Any:
    return await _call(stripe.Subscription.create, **params)


async def retrieve_subscription(subscription_id: str) -> Any:
    return await _call(stripe.Subscription.retrieve, subscription_id)


async def modify_subscription(subscription_id: str, **params) -> Any:
    return await _call(stripe.Subscription.modify, subscription_id, **params)


async def retrieve_payment_intent(payment_intent_id: str) -> dict[str, Any]:
    intent = await _call(stripe.PaymentIntent.retrieve, payment_intent_id)
    return intent.to_dict()
