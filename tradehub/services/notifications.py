"""Fire-and-forget user notifications.

Messages are rendered here and handed to the arq worker; a failure to enqueue is
logged and never propagates into the caller's (already committed) operation.
"""

from tradehub.core.config import get_settings
from tradehub.core.logging import get_logger
from tradehub.models.user import User

log = get_logger(__name__)

TEMPLATES = {
    "account_verified": (
        "Your TradeHub account is verified",
        "<p>Hi {name},</p><p>Your account has been verified. You can now apply for jobs.</p>",
    ),
    "subscription_started": (
        "Your {plan} subscription is active",
        "<p>Hi {name},</p><p>Your {plan} subscription is active and {credits} credits were added.</p>",
    ),
    "subscription_changed": (
        "Your subscription was updated",
        "<p>Hi {name},</p><p>Your subscription status is now <strong>{status}</strong>.</p>",
    ),
    "subscription_renewed": (
        "Your subscription renewed",
        "<p>Hi {name},</p><p>Your subscription renewed and {credits} credits were added.</p>",
    ),
    "subscription_payment_failed": (
        "Subscription payment failed",
        "<p>Hi {name},</p><p>We could not collect your subscription payment. Please update your payment method.</p>",
    ),
}


def render(kind: str, **context) -> tuple[str, str]:
    subject, body = TEMPLATES[kind]
    return subject.format(**context), body.format(**context)


async def notify(user: User, kind: str, **context) -> bool:
    """Enqueue an email for user; returns False when it was not queued."""
    if not get_settings().notifications_enabled:
        log.debug("notification_skipped", kind=kind, user_id=str(user.id))
        return False
    subject, body = render(kind, name=user.first_name or user.email, **context)
    from tradehub.worker.tasks import enqueue_notification_email
    try:
        await enqueue_notification_email(user.email, subject, body)
    except Exception:
        log.exception("notification_enqueue_failed", kind=kind, user_id=str(user.id))
        return False
    log.info("notification_queued", kind=kind, user_id=str(user.id))
    return True
