"""CreditTransaction entity - append-only audit trail of balance changes."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from promptforge.core.timezone import UTCDateTime, utcnow


class CreditTransactionType(str, Enum):
    """Direction of a balance change."""

    EARNED = "earned"
    SPENT = "spent"
    REFUNDED = "refunded"


class CreditTransaction(SQLModel, table=True):
    """Immutable record of one balance change.

    amount is always a positive magnitude; the type carries the sign
    (earned and refunded add to the balance, spent subtracts).
    """

    __tablename__ = "credit_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    type: CreditTransactionType = Field(index=True)
    amount: int = Field(gt=0)
    description: str = Field(max_length=500)
    related_item_id: Optional[UUID] = Field(default=None, index=True)
    reservation_id: Optional[UUID] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)

    @property
    def signed_amount(self) -> int:
        """Amount with the sign applied to the balance."""
        if self.type == CreditTransactionType.SPENT:
            return -self.amount
        return self.amount
