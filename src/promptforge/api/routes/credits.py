"""Credit balance API endpoints.

- GET /api/credits - Current balance of the caller
- GET /api/credits/transactions - Credit history, newest first
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from promptforge.api.dependencies import get_current_user_id, get_ledger
from promptforge.services.ledger import CreditLedger

router = APIRouter(prefix="/api/credits", tags=["credits"])


class BalanceResponse(BaseModel):
    """Response model for balance queries."""

    user_id: str
    credits: int = Field(..., description="Spendable credits (pending reservations excluded)")


class TransactionView(BaseModel):
    """One entry of the credit history."""

    id: UUID
    type: str = Field(..., description="earned, spent or refunded")
    amount: int = Field(..., description="Positive magnitude; the type carries the sign")
    description: str
    related_item_id: UUID | None = None
    reservation_id: UUID | None = None
    created_at: datetime


@router.get("", response_model=BalanceResponse)
async def get_credits(
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_ledger),
) -> BalanceResponse:
    return BalanceResponse(user_id=user_id, credits=await ledger.get_balance(user_id))


@router.get("/transactions", response_model=list[TransactionView])
async def list_transactions(
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_ledger),
) -> list[TransactionView]:
    transactions = await ledger.list_transactions(user_id, limit=limit)
    return [
        TransactionView(
            id=tx.id,
            type=tx.type.value,
            amount=tx.amount,
            description=tx.description,
            related_item_id=tx.related_item_id,
            reservation_id=tx.reservation_id,
            created_at=tx.created_at,
        )
        for tx in transactions
    ]
