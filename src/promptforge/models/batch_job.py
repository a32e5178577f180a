"""BatchJob entity - named batch of generation requests with lifecycle tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from promptforge.core.timezone import UTCDateTime, utcnow


class BatchJobStatus(str, Enum):
    """Batch job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset(
    {
        BatchJobStatus.COMPLETED,
        BatchJobStatus.COMPLETED_WITH_FAILURES,
        BatchJobStatus.CANCELLED,
        BatchJobStatus.FAILED,
    }
)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job or item state transition."""

    pass


class BatchJob(SQLModel, table=True):
    """BatchJob groups the items of one submission and aggregates their progress.

    Counters are maintained with SQL increments by the orchestrator; the
    transition helpers below are used on rows loaded under the job lock.
    """

    __tablename__ = "batch_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    name: str = Field(max_length=255)
    model_id: str = Field(max_length=100)
    status: BatchJobStatus = Field(default=BatchJobStatus.PENDING, index=True)
    total_items: int = Field(default=0, ge=0)
    completed_items: int = Field(default=0, ge=0)
    failed_items: int = Field(default=0, ge=0)
    credits_reserved: int = Field(default=0, ge=0)
    credits_used: int = Field(default=0, ge=0)
    cancel_requested: bool = Field(default=False)
    failure_reason: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def is_halted(self) -> bool:
        """True when workers must stop pulling new items."""
        return (
            self.status != BatchJobStatus.PROCESSING
            or self.cancel_requested
            or self.failure_reason is not None
        )

    @property
    def processed_items(self) -> int:
        """Items with a terminal outcome other than skipped."""
        return self.completed_items + self.failed_items

    def final_status(self) -> BatchJobStatus:
        """Status the job takes once no item is left in flight."""
        if self.failure_reason is not None:
            return BatchJobStatus.FAILED
        if self.cancel_requested:
            return BatchJobStatus.CANCELLED
        if self.failed_items > 0:
            return BatchJobStatus.COMPLETED_WITH_FAILURES
        return BatchJobStatus.COMPLETED

    def mark_processing(self) -> None:
        """Transition from pending to processing.

        Raises:
            InvalidStateTransition: If current status is not pending
        """
        if self.status != BatchJobStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot start job from {self.status.value}. Job must be in pending state."
            )
        self.status = BatchJobStatus.PROCESSING
        self.started_at = utcnow()

    def mark_cancelled(self) -> None:
        """Cancel a job that never started.

        Raises:
            InvalidStateTransition: If current status is not pending
        """
        if self.status != BatchJobStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot cancel job directly from {self.status.value}. "
                "Processing jobs drain in-flight items first."
            )
        self.cancel_requested = True
        self.status = BatchJobStatus.CANCELLED
        self.finished_at = utcnow()
