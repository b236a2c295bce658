from fastapi import APIRouter, Header, Request

from tradehub.services import webhooks as webhooks_service

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(request: Request, stripe_signature: str | None = Header(None, alias="Stripe-Signature")):
    """Stripe events. 400 only for a bad signature; handler failures are acknowledged and dead-lettered."""
    body = await request.body()
    event = webhooks_service.verify_event(body, stripe_signature)
    if not await webhooks_service.dispatch_event(event):
        return {"received": True, "warning": "Processed with errors"}
    return {"received": True}
