"""Credit packages: Stripe PaymentIntent creation, purchase capture and the credit summary.

A succeeded PaymentIntent is captured (Transaction plus ledger grant, as one
unit of work) either by the `payment_intent.succeeded` webhook or by the client
asking `verify_payment` after confirming. Both paths re-read the intent from
Stripe's side and share the intent id as idempotency key, so whichever arrives
second finds it captured and grants nothing.
"""

from typing import Any, Awaitable, Callable

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from tradehub.core.audit import log_event
from tradehub.core.config import get_settings
from tradehub.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from tradehub.core.logging import get_logger
from tradehub.db.session import UnitOfWork, atomic
from tradehub.models.credit_ledger import LedgerTransactionType, RelatedModel
from tradehub.models.transaction import Transaction, TransactionStatus, TransactionType
from tradehub.models.user import User, UserRole
from tradehub.services import credits as credits_service
from tradehub.services import stripe_client

log = get_logger(__name__)

Grant = Callable[[UnitOfWork], Awaitable[object]]


class _AlreadyRecorded(Exception):
    """The external id is already taken by another delivery."""


def _require_tradesperson(user: User, action: str) -> None:
    if user.role != UserRole.TRADESPERSON:
        raise ForbiddenError(f"Only tradespeople can {action}")


def metadata_user_id(value: Any) -> PydanticObjectId:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError) as e:
        raise ValueError(f"Invalid userId in metadata: {value!r}") from e


async def find_transaction(external_id: str) -> Transaction | None:
    return await Transaction.find_one(Transaction.external_id == external_id)


async def _insert_once(transaction: Transaction, uow: UnitOfWork) -> None:
    try:
        await transaction.insert(session=uow.session)
    except DuplicateKeyError as e:
        log.info("stripe_event_duplicate", external_id=transaction.external_id, source="unique_index")
        raise _AlreadyRecorded(transaction.external_id) from e
    uow.on_rollback(transaction.delete)


async def record_once(transaction: Transaction, grant: Grant | None = None) -> bool:
    """Insert transaction and run grant(uow) as one unit of work.

    False when its external_id was already recorded. If grant fails the
    transaction goes with it, so a redelivery can try again.
    """

    async def _work(uow: UnitOfWork) -> None:
        await _insert_once(transaction, uow)
        if grant is not None:
            await grant(uow)

    try:
        await atomic(_work)
    except _AlreadyRecorded:
        return False
    return True


async def create_payment_intent(user: User, package_id: str) -> dict[str, Any]:
    """Create a PaymentIntent for a credit package; the client confirms it with the secret."""
    _require_tradesperson(user, "purchase credits")
    package = credits_service.get_package(package_id)
    intent = await stripe_client.create_payment_intent(
        amount=round(package["price"] * 100),
        currency=get_settings().stripe_currency,
        metadata={
            "userId": str(user.id),
            "packageId": package_id,
            "credits": str(package["credits"]),
        },
        automatic_payment_methods={"enabled": True},
    )
    log.info("payment_intent_created", user_id=str(user.id), package_id=package_id, payment_intent_id=intent["id"])
    return {
        "client_secret": intent["client_secret"],
        "package": package,
    }


async def capture_purchase(payment_intent: dict[str, Any]) -> Transaction | None:
    """Record a succeeded PaymentIntent and grant its credits.

    Returns the new completed Transaction, or None when the intent was already captured.
    """
    intent_id = payment_intent["id"]
    metadata = payment_intent.get("metadata") or {}
    if not metadata.get("userId") or not metadata.get("credits"):
        raise ValueError(f"Missing required metadata for payment {intent_id}")
    if await find_transaction(intent_id):
        log.info("stripe_event_duplicate", external_id=intent_id, source="lookup")
        return None
    user_id = metadata_user_id(metadata["userId"])
    if not await User.get(user_id):
        raise NotFoundError(f"User {user_id} not found")
    credits = int(metadata["credits"])
    transaction = Transaction(
        user_id=user_id,
        amount=credits,
        price=payment_intent.get("amount", 0) / 100,
        currency=(payment_intent.get("currency") or "usd").upper(),
        type=TransactionType.PURCHASE,
        status=TransactionStatus.COMPLETED,
        description=f"Purchased {credits} credits",
        payment_method_id=payment_intent.get("payment_method"),
        external_id=intent_id,
        metadata={"stripePaymentIntentId": intent_id, "packageId": metadata.get("packageId")},
    )

    async def _grant(uow: UnitOfWork) -> None:
        _, account = await credits_service.add_credits(
            user_id,
            credits,
            LedgerTransactionType.PURCHASE,
            related_to=transaction.id,
            related_model=RelatedModel.TRANSACTION,
            notes=f"Purchased {credits} credits (Stripe payment {intent_id})",
            session=uow.session,
        )
        log.info("payment_captured", user_id=str(user_id), payment_intent_id=intent_id, credits=credits, available=account.available)

    if not await record_once(transaction, _grant):
        return None
    await log_event(user_id, "payment_captured", "payment", intent_id, {"credits": credits, "amount": payment_intent.get("amount")})
    return transaction


def _transaction_view(transaction: Transaction) -> dict[str, Any]:
    return {"id": str(transaction.id), "amount": transaction.amount, "date": transaction.created_at.isoformat()}


async def verify_payment(user: User, payment_intent_id: str) -> dict[str, Any]:
    """Capture a purchase the client just confirmed, without waiting for the webhook."""
    _require_tradesperson(user, "verify credit purchases")
    intent = await stripe_client.retrieve_payment_intent(payment_intent_id)
    if intent.get("status") != "succeeded":
        raise BadRequestError("Payment has not been completed")
    if (intent.get("metadata") or {}).get("userId") != str(user.id):
        log.warning("payment_verify_user_mismatch", user_id=str(user.id), payment_intent_id=payment_intent_id)
        raise ForbiddenError("Payment verification failed: user mismatch")
    transaction = await capture_purchase(intent)
    already_processed = transaction is None
    if already_processed:
        transaction = await find_transaction(payment_intent_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
    return {
        "success": True,
        "already_processed": already_processed,
        "credits": transaction.amount,
        "transaction": _transaction_view(transaction),
    }


async def get_credit_summary(user: User, recent: int = 10) -> dict[str, Any]:
    _require_tradesperson(user, "have credits")
    transactions = (
        await Transaction.find(Transaction.user_id == user.id)
        .sort(-Transaction.created_at)
        .limit(recent)
        .to_list()
    )
    return {
        "available": user.credits.available,
        "spent": user.credits.spent,
        "transactions": [
            {
                "id": str(t.id),
                "amount": t.amount,
                "type": t.type,
                "description": t.description,
                "status": t.status,
                "date": t.created_at.isoformat(),
            }
            for t in transactions
        ],
    }
