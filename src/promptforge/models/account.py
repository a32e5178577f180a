"""Account entity - per-user credit balance."""

from datetime import datetime

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from promptforge.core.timezone import UTCDateTime, utcnow


class Account(SQLModel, table=True):
    """Account holds the authoritative credit balance for one user.

    The balance is mutated only through the credit ledger, always together with
    a credit transaction of the same magnitude.
    """

    __tablename__ = "accounts"  # type: ignore[assignment]
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),)

    user_id: str = Field(primary_key=True, max_length=255)
    credits: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
