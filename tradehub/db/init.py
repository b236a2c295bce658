import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from tradehub.core.config import get_settings
from tradehub.models.application import Application
from tradehub.models.audit_log import AuditLog
from tradehub.models.failed_event import FailedEvent
from tradehub.models.job import Job
from tradehub.models.subscription_plan import SubscriptionPlan
from tradehub.models.transaction import Transaction
from tradehub.models.user import User

DOCUMENT_MODELS = [
    User,
    Job,
    Application,
    Transaction,
    SubscriptionPlan,
    AuditLog,
    FailedEvent,
]

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client() -> AsyncIOMotorClient:
    """Client backing the Beanie models; needed to open sessions for multi-document transactions."""
    if _client is None:
        raise RuntimeError("Database not initialised; call init_db() first")
    return _client


async def init_db(client: AsyncIOMotorClient | None = None) -> None:
    """Connect and register document models. Tests pass an in-memory client."""
    global _client
    settings = get_settings()
    if client is None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    _client = client
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
