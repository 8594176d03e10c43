"""Credit balance and ledger endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from session_engine.results import ErrorCode

from api.dependencies import LedgerDep, UserDep
from api.errors import error_response
from api.schemas import (
    BalanceResponse,
    CreditTransactionResponse,
    Pagination,
    TransactionListResponse,
)

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(user_id: UserDep, ledger: LedgerDep) -> BalanceResponse | JSONResponse:
    balance = await ledger.get_balance(user_id)
    if balance is None:
        return error_response(ErrorCode.USER_NOT_FOUND, "User not found")
    return BalanceResponse(credits=balance)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    user_id: UserDep,
    ledger: LedgerDep,
    transaction_type: str | None = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> TransactionListResponse:
    """Return the user's ledger, newest first."""
    rows, total = await ledger.list_transactions(
        user_id,
        transaction_type=transaction_type,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return TransactionListResponse(
        transactions=[CreditTransactionResponse.from_row(r) for r in rows],
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=(total + limit - 1) // limit),
    )
