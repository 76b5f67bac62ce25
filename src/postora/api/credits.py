"""Credit balance, free-trial and transaction history endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from postora.api.dependencies import get_credit_service, get_current_user_id
from postora.config import settings
from postora.services.credit_service import CreditService
from postora.services.ledger_store import CreditAccount, CreditTransactionEntry

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class FreeTrialResponse(BaseModel):
    granted: bool
    account: CreditAccount


class Pagination(BaseModel):
    limit: int
    offset: int
    count: int


class TransactionHistoryResponse(BaseModel):
    transactions: list[CreditTransactionEntry]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("", response_model=CreditAccount)
async def read_credits(
    user_id: str = Depends(get_current_user_id),
    credits: CreditService = Depends(get_credit_service),
):
    """Return the user's balance, creating the account on first visit."""
    return await credits.ensure_account(user_id)


@router.post("/free-trial", response_model=FreeTrialResponse)
async def claim_free_trial(
    user_id: str = Depends(get_current_user_id),
    credits: CreditService = Depends(get_credit_service),
):
    """Grant the one-time free-trial credits."""
    account, granted = await credits.grant_free_trial(user_id)
    return FreeTrialResponse(granted=granted, account=account)


@router.get("/transactions", response_model=TransactionHistoryResponse)
async def read_transactions(
    limit: int = Query(10, ge=1, le=settings.HISTORY_MAX_LIMIT),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    credits: CreditService = Depends(get_credit_service),
):
    """Return the user's credit transactions, newest first."""
    transactions = await credits.get_history(user_id, limit=limit, offset=offset)
    return TransactionHistoryResponse(
        transactions=transactions,
        pagination=Pagination(limit=limit, offset=offset, count=len(transactions)),
    )
