from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tradehub.core.pagination import paginate
from tradehub.deps import require_admin
from tradehub.models.credit_ledger import LedgerTransactionType
from tradehub.models.user import User
from tradehub.services import admin as admin_service

router = APIRouter()


class GrantCreditsRequest(BaseModel):
    amount: int = Field(gt=0)
    transaction_type: LedgerTransactionType = LedgerTransactionType.BONUS
    notes: str | None = Field(default=None, max_length=500)


@router.post("/tradespeople/{tradesperson_id}/credits")
async def admin_grant_credits(
    tradesperson_id: str,
    body: GrantCreditsRequest,
    user: User = Depends(require_admin),
):
    """Admin: add credits to a tradesperson (bonus unless stated otherwise)."""
    return await admin_service.grant_credits(user, tradesperson_id, body.amount, body.transaction_type, body.notes)


@router.get("/tradespeople/{tradesperson_id}/credits")
async def admin_credit_history(
    tradesperson_id: str,
    user: User = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset)
    return await admin_service.get_credit_history(tradesperson_id, limit, offset)


@router.post("/tradespeople/{tradesperson_id}/verify")
async def admin_verify_tradesperson(tradesperson_id: str, user: User = Depends(require_admin)):
    """Admin: mark a tradesperson verified so they can apply for jobs."""
    return await admin_service.verify_tradesperson(user, tradesperson_id)
