"""Credit ledger on the tradesperson document: counters and history move together.

Every change to `credits.available` / `credits.spent` goes through
`_apply_ledger_entry`, which issues one `find_one_and_update` carrying both the
`$inc` on the counters and the `$push` of the entry. Nothing reads the document,
edits it in memory and writes it back.
"""

from beanie import PydanticObjectId
from beanie.odm.queries.update import UpdateResponse

from tradehub.core.exceptions import BadRequestError, InsufficientCreditsError, NotFoundError
from tradehub.core.logging import get_logger
from tradehub.core.pagination import newest_first
from tradehub.models.credit_ledger import CreditAccount, LastPurchase, LedgerEntry, LedgerTransactionType, RelatedModel
from tradehub.models.user import User

log = get_logger(__name__)

# Package id -> credits and USD price
CREDIT_PACKAGES = {
    "basic": {"name": "Basic Credits Package", "credits": 10, "price": 9.99},
    "standard": {"name": "Standard Credits Package", "credits": 25, "price": 19.99},
    "premium": {"name": "Premium Credits Package", "credits": 60, "price": 39.99},
}


def has_enough_credits(user: User, amount: int) -> bool:
    """Pre-flight check only; use_credits re-checks atomically."""
    return user.credits.available >= amount


async def _apply_ledger_entry(
    user_id: PydanticObjectId,
    entry: LedgerEntry,
    *,
    spent_delta: int = 0,
    require_available: int | None = None,
    extra_set: dict | None = None,
    session=None,
) -> User | None:
    """Apply entry.amount to the counters and push the entry in one update.

    Returns the updated user, or None when no document matched (missing user, or
    fewer than `require_available` credits at the moment of the write).
    """
    query: dict = {"_id": user_id}
    if require_available is not None:
        query["credits.available"] = {"$gte": require_available}
    inc = {"credits.available": entry.amount}
    if spent_delta:
        inc["credits.spent"] = spent_delta
    update: dict = {"$inc": inc, "$push": {"credits.history": entry.model_dump()}}
    if extra_set:
        update["$set"] = extra_set
    return await User.find_one(query).update(
        update,
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )


async def add_credits(
    user_id: PydanticObjectId,
    amount: int,
    transaction_type: LedgerTransactionType,
    related_to: PydanticObjectId | None = None,
    related_model: RelatedModel | None = None,
    notes: str | None = None,
    session=None,
) -> tuple[LedgerEntry, CreditAccount]:
    """Grant credits. Returns (entry, account_after)."""
    if amount <= 0:
        raise BadRequestError("Credit amount must be positive")
    entry = LedgerEntry(
        amount=amount,
        transaction_type=transaction_type,
        related_to=related_to,
        related_model=related_model,
        notes=notes,
    )
    extra_set = None
    if transaction_type == LedgerTransactionType.PURCHASE:
        extra_set = {
            "credits.last_purchase": LastPurchase(amount=amount, transaction_id=related_to, date=entry.date).model_dump()
        }
    user = await _apply_ledger_entry(user_id, entry, extra_set=extra_set, session=session)
    if user is None:
        raise NotFoundError("Tradesperson not found")
    log.info(
        "credits_added",
        user_id=str(user_id),
        amount=amount,
        transaction_type=entry.transaction_type,
        available=user.credits.available,
    )
    return entry, user.credits


async def use_credits(
    user_id: PydanticObjectId,
    amount: int,
    related_to: PydanticObjectId | None = None,
    related_model: RelatedModel | None = None,
    notes: str | None = None,
    session=None,
) -> tuple[LedgerEntry, CreditAccount]:
    """Consume credits; the balance check and the decrement are one conditional update."""
    if amount <= 0:
        raise BadRequestError("Credit amount must be positive")
    entry = LedgerEntry(
        amount=-amount,
        transaction_type=LedgerTransactionType.USAGE,
        related_to=related_to,
        related_model=related_model,
        notes=notes,
    )
    user = await _apply_ledger_entry(
        user_id,
        entry,
        spent_delta=amount,
        require_available=amount,
        session=session,
    )
    if user is None:
        current = await User.get(user_id, session=session)
        if current is None:
            raise NotFoundError("Tradesperson not found")
        raise InsufficientCreditsError(required=amount, available=current.credits.available)
    log.info("credits_used", user_id=str(user_id), amount=amount, available=user.credits.available)
    return entry, user.credits


async def revert_ledger_entry(
    user_id: PydanticObjectId,
    entry: LedgerEntry,
    spent_delta: int = 0,
    session=None,
) -> None:
    """Remove an entry written by an aborted unit of work, restoring its counters with it."""
    update: dict = {
        "$inc": {"credits.available": -entry.amount},
        "$pull": {"credits.history": {"entry_id": entry.entry_id}},
    }
    if spent_delta:
        update["$inc"]["credits.spent"] = -spent_delta
    await User.find_one({"_id": user_id, "credits.history.entry_id": entry.entry_id}).update(update, session=session)
    log.warning("credits_entry_reverted", user_id=str(user_id), entry_id=str(entry.entry_id), amount=entry.amount)


def get_credit_history(user: User, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
    """Ledger entries newest first."""
    return newest_first(user.credits.history, limit, offset)


def get_package(package_id: str) -> dict:
    package = CREDIT_PACKAGES.get(package_id)
    if not package:
        raise BadRequestError("Invalid package selected")
    return {"id": package_id, **package}
