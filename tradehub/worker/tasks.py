"""ARQ job definitions."""

import uuid
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from tradehub.core.config import get_settings
from tradehub.core.logging import get_logger
from tradehub.services.email import send_email

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    payload: dict[str, Any],
    coro,
) -> None:
    """Run coroutine; on exception persist to FailedEvent then re-raise."""
    try:
        await coro
    except Exception as e:
        from tradehub.models.failed_event import FailedEvent
        fid = job_id or str(uuid.uuid4())
        await FailedEvent(
            source="worker",
            name=job_name,
            reference_id=fid,
            payload=payload,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def send_notification_email(ctx: dict[str, Any], to: str, subject: str, body: str) -> None:
    """Deliver one queued notification email."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None

    async def _run() -> None:
        log.info("job_start", job="send_notification_email", to=to)
        await send_email(to, subject, body)
        log.info("job_done", job="send_notification_email", to=to)

    await _run_with_dlq("send_notification_email", job_id, {"to": to, "subject": subject}, _run())


async def startup(ctx: dict) -> None:
    from tradehub.core.logging import configure_logging
    from tradehub.core.observability import init_sentry
    from tradehub.db.init import init_db
    configure_logging(debug=get_settings().debug)
    init_sentry("worker")
    await init_db()
    log.info("worker_started", functions=["send_notification_email"])


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(get_settings().redis_url)


async def enqueue_notification_email(to: str, subject: str, body: str) -> None:
    """Enqueue send_notification_email (call from API)."""
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("send_notification_email", to, subject, body)
    finally:
        await redis.close()
