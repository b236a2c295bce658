import hashlib
import hmac
import os
import time
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Standalone in-memory DB: no transactions, no queue, fixed secrets
os.environ["MONGODB_DB_NAME"] = "tradehub_test"
os.environ["MONGODB_TRANSACTIONS"] = "false"
os.environ["NOTIFICATIONS_ENABLED"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.pop("SENTRY_DSN", None)

WEBHOOK_SECRET = "whsec_test"


async def _restore_partial_indexes(database) -> None:
    """mongomock's create_indexes drops partialFilterExpression; rebuild those indexes with it."""
    from pymongo import IndexModel
    from tradehub.db.init import DOCUMENT_MODELS
    for model in DOCUMENT_MODELS:
        for index in getattr(model.Settings, "indexes", []):
            if not isinstance(index, IndexModel) or "partialFilterExpression" not in index.document:
                continue
            options = dict(index.document)
            keys = list(options.pop("key").items())
            collection = database[model.Settings.name]
            await collection.drop_index(options["name"])
            await collection.create_index(keys, **options)


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory database with Beanie models registered, per test."""
    from tradehub.db.init import init_db
    client = AsyncMongoMockClient()
    await init_db(client=client)
    await _restore_partial_indexes(client["tradehub_test"])
    yield client["tradehub_test"]


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from tradehub.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def make_user(
    email: str,
    role: str = "tradesperson",
    verified: bool = True,
    credits: int = 0,
    **fields,
):
    from tradehub.models.credit_ledger import CreditAccount, LedgerEntry, LedgerTransactionType
    from tradehub.models.user import User, UserRole
    account = CreditAccount()
    if credits:
        account = CreditAccount(
            available=credits,
            history=[LedgerEntry(amount=credits, transaction_type=LedgerTransactionType.BONUS, notes="Opening balance")],
        )
    user = User(
        email=email,
        first_name=email.split("@")[0].title(),
        role=UserRole(role),
        is_verified=verified,
        credits=account,
        **fields,
    )
    await user.insert()
    return user


async def make_job(customer, title: str = "Fix leaking kitchen tap", credit_cost: int = 1, status: str = "open"):
    from tradehub.models.job import Job, JobStatus
    job = Job(title=title, customer_id=customer.id, credit_cost=credit_cost, status=JobStatus(status))
    await job.insert()
    return job


async def make_plan(name: str = "Pro", credits: int = 10, price: float = 29.99, billing_period: str = "month"):
    from tradehub.models.subscription_plan import BillingPeriod, SubscriptionPlan
    plan = SubscriptionPlan(
        name=name,
        price=price,
        billing_period=BillingPeriod(billing_period),
        credits_per_period=credits,
        stripe_price_id=f"price_{name.lower()}",
    )
    await plan.insert()
    return plan


def auth_headers(user) -> dict[str, str]:
    from tradehub.core.security import create_session_cookie
    from tradehub.deps import SESSION_COOKIE_NAME
    cookie = create_session_cookie({"user_id": str(user.id), "session_version": user.session_version})
    return {"Cookie": f"{SESSION_COOKIE_NAME}={cookie}"}


def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value: t=<ts>,v1=<hex hmac-sha256 of "<ts>.<payload>">."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
