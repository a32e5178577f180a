"""BatchItem entity - one generation request inside a batch job."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from promptforge.core.timezone import UTCDateTime, utcnow
from promptforge.models.batch_job import InvalidStateTransition


class BatchItemStatus(str, Enum):
    """Batch item lifecycle status."""

    QUEUED = "queued"
    RESERVING = "reserving"
    DISPATCHING = "dispatching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_ITEM_STATUSES = frozenset(
    {BatchItemStatus.SUCCEEDED, BatchItemStatus.FAILED, BatchItemStatus.SKIPPED}
)
IN_FLIGHT_ITEM_STATUSES = frozenset({BatchItemStatus.RESERVING, BatchItemStatus.DISPATCHING})

# queued is reachable again from in-flight states only through recovery
ITEM_TRANSITIONS: dict[BatchItemStatus, frozenset[BatchItemStatus]] = {
    BatchItemStatus.QUEUED: frozenset({BatchItemStatus.RESERVING, BatchItemStatus.SKIPPED}),
    BatchItemStatus.RESERVING: frozenset(
        {BatchItemStatus.DISPATCHING, BatchItemStatus.FAILED, BatchItemStatus.QUEUED}
    ),
    BatchItemStatus.DISPATCHING: frozenset(
        {BatchItemStatus.SUCCEEDED, BatchItemStatus.FAILED, BatchItemStatus.QUEUED}
    ),
}


def check_item_transition(current: BatchItemStatus, target: BatchItemStatus) -> None:
    """Validate an item transition.

    Raises:
        InvalidStateTransition: If target is not reachable from current
    """
    if target not in ITEM_TRANSITIONS.get(current, frozenset()):
        raise InvalidStateTransition(
            f"Cannot move batch item from {current.value} to {target.value}."
        )


class BatchItem(SQLModel, table=True):
    """BatchItem tracks one prompt from submission to its terminal outcome."""

    __tablename__ = "batch_items"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("job_id", "sequence_index", name="uq_batch_items_job_seq"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="batch_jobs.id", index=True)
    sequence_index: int = Field(ge=0)
    prompt: str
    settings: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: BatchItemStatus = Field(default=BatchItemStatus.QUEUED, index=True)
    reservation_id: Optional[UUID] = Field(default=None)
    result_ref: Optional[str] = Field(default=None)
    thumbnail_ref: Optional[str] = Field(default=None)
    result_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error_kind: Optional[str] = Field(default=None, max_length=50)
    error_message: Optional[str] = Field(default=None, max_length=1000)
    credits_charged: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    # Until then the claim holder owns the item; recovery only touches expired leases
    lease_expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES

    @property
    def has_outcome(self) -> bool:
        """True once a dispatch result or a classified dispatch error is recorded."""
        return self.result_ref is not None or self.error_kind is not None

