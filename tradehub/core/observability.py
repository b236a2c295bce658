"""Sentry wiring shared by the API process and the arq worker."""

import sentry_sdk

from tradehub.core.config import get_settings
from tradehub.core.logging import get_logger

log = get_logger(__name__)


def init_sentry(component: str) -> bool:
    """Initialise Sentry when SENTRY_DSN is set; returns whether it is enabled."""
    settings = get_settings()
    if not settings.sentry_dsn:
        return False
    sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
    sentry_sdk.set_tag("component", component)
    log.info("startup", msg="Sentry enabled", component=component)
    return True


def report_exception(exc: BaseException, **tags: str) -> None:
    """Send a handled exception to Sentry (no-op without a DSN)."""
    if not get_settings().sentry_dsn:
        return
    sentry_sdk.capture_exception(exc, tags=tags)
