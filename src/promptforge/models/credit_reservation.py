"""CreditReservation entity - provisional debit held by an in-flight operation."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from promptforge.core.timezone import UTCDateTime, utcnow


class ReservationStatus(str, Enum):
    """Reservation lifecycle. committed and refunded are mutually exclusive terminals."""

    PENDING = "pending"
    COMMITTED = "committed"
    REFUNDED = "refunded"


class CreditReservation(SQLModel, table=True):
    """Persistent side of a reservation token.

    The balance is debited when the reservation is created; commit only settles it,
    refund credits the amount back.
    """

    __tablename__ = "credit_reservations"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    amount: int = Field(gt=0)
    status: ReservationStatus = Field(default=ReservationStatus.PENDING, index=True)
    reason: str = Field(max_length=500)
    idempotency_key: Optional[str] = Field(default=None, max_length=255, unique=True)
    related_item_id: Optional[UUID] = Field(default=None, index=True)
    spent_transaction_id: UUID
    refund_transaction_id: Optional[UUID] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    settled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
