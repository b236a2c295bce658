"""Email delivery through the SendGrid HTTP API."""

import httpx

from tradehub.core.config import get_settings
from tradehub.core.logging import get_logger

log = get_logger(__name__)


async def send_email(to: str, subject: str, body: str) -> int:
    """Send one HTML email; returns the API status code. Raises on delivery failure."""
    settings = get_settings()
    if not settings.sendgrid_api_key:
        raise RuntimeError("SendGrid API key not configured")
    payload = {
        "personalizations": [{"to": [{"email": to}], "subject": subject}],
        "from": {"email": settings.email_from_address, "name": settings.email_from_name},
        "content": [{"type": "text/html", "value": body}],
    }
    async with httpx.AsyncClient(base_url=settings.sendgrid_host, timeout=10.0) as client:
        response = await client.post(
            "/v3/mail/send",
            json=payload,
            headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
        )
    response.raise_for_status()
    log.info("email_sent", to=to, subject=subject, status_code=response.status_code)
    return response.status_code
