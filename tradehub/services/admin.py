"""Admin operations on tradespeople: manual credit grants, ledger reads, verification."""

from datetime import datetime
from typing import Any

from tradehub.core.audit import log_event
from tradehub.core.exceptions import BadRequestError, NotFoundError
from tradehub.core.logging import get_logger
from tradehub.core.security import parse_object_id
from tradehub.models.credit_ledger import LedgerTransactionType
from tradehub.models.user import User, UserRole
from tradehub.services import credits as credits_service
from tradehub.services.notifications import notify

log = get_logger(__name__)

# Types an admin may grant by hand; usage only ever comes from applications
GRANTABLE_TYPES = {
    LedgerTransactionType.BONUS,
    LedgerTransactionType.REFUND,
    LedgerTransactionType.PURCHASE,
    LedgerTransactionType.SUBSCRIPTION,
}


async def _get_tradesperson(tradesperson_id: str) -> User:
    user = await User.get(parse_object_id(tradesperson_id, "tradesperson ID"))
    if not user or user.role != UserRole.TRADESPERSON:
        raise NotFoundError("Tradesperson not found")
    return user


async def grant_credits(
    admin: User,
    tradesperson_id: str,
    amount: int,
    transaction_type: LedgerTransactionType = LedgerTransactionType.BONUS,
    notes: str | None = None,
) -> dict[str, Any]:
    if transaction_type not in GRANTABLE_TYPES:
        raise BadRequestError(f"Cannot grant credits of type {transaction_type.value}")
    tradesperson = await _get_tradesperson(tradesperson_id)
    entry, account = await credits_service.add_credits(
        tradesperson.id,
        amount,
        transaction_type,
        notes=notes or f"Admin added {amount} credits",
    )
    log.info("admin_credits_granted", admin_id=str(admin.id), tradesperson_id=str(tradesperson.id), amount=amount)
    await log_event(
        admin.id,
        "admin_credits_granted",
        "user",
        tradesperson.id,
        {"amount": amount, "transaction_type": entry.transaction_type, "entry_id": str(entry.entry_id)},
    )
    return {
        "available": account.available,
        "spent": account.spent,
        "entry": entry.model_dump(mode="json"),
    }


async def get_credit_history(tradesperson_id: str, limit: int = 50, offset: int = 0) -> dict[str, Any]:
    tradesperson = await _get_tradesperson(tradesperson_id)
    history = credits_service.get_credit_history(tradesperson, limit, offset)
    return {
        "available": tradesperson.credits.available,
        "spent": tradesperson.credits.spent,
        "history": [e.model_dump(mode="json") for e in history],
    }


async def verify_tradesperson(admin: User, tradesperson_id: str) -> dict[str, Any]:
    tradesperson = await _get_tradesperson(tradesperson_id)
    if tradesperson.is_verified:
        return {"id": str(tradesperson.id), "is_verified": True}
    await tradesperson.set({User.is_verified: True, User.updated_at: datetime.utcnow()})
    log.info("tradesperson_verified", admin_id=str(admin.id), tradesperson_id=str(tradesperson.id))
    await log_event(admin.id, "tradesperson_verified", "user", tradesperson.id)
    await notify(tradesperson, "account_verified")
    return {"id": str(tradesperson.id), "is_verified": True}
