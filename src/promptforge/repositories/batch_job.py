"""BatchJob repository.

Aggregate counters are updated with SQL increments so concurrent workers of the
same job never lose updates; the UPDATE also takes the job row lock, which
serializes the finalization check that follows it in the same transaction.
"""

from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.core.timezone import utcnow
from promptforge.models.batch_job import BatchJob, BatchJobStatus


class BatchJobRepository:
    """Repository for BatchJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: BatchJob) -> BatchJob:
        """Persist new job to database."""
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> BatchJob | None:
        """Retrieve job by UUID.

        Uses populate_existing so repeated reads in one session observe the
        counters written by other workers.
        """
        result = await self.session.execute(
            select(BatchJob)
            .where(BatchJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, job_id: UUID) -> BatchJob | None:
        """Retrieve job and take its row lock until the transaction ends."""
        result = await self.session.execute(
            select(BatchJob)
            .where(BatchJob.id == job_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str, limit: int = 20, offset: int = 0) -> list[BatchJob]:
        """Retrieve a user's jobs, newest first.

        Args:
            user_id: Owner of the jobs
            limit: Maximum number of jobs to return (default: 20)
            offset: Number of jobs to skip (default: 0)
        """
        result = await self.session.execute(
            select(BatchJob)
            .where(BatchJob.user_id == user_id)  # type: ignore[arg-type]
            .order_by(BatchJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_by_status(self, status: BatchJobStatus) -> list[BatchJob]:
        """Retrieve all jobs in a status, oldest first."""
        result = await self.session.execute(
            select(BatchJob)
            .where(BatchJob.status == status)  # type: ignore[arg-type]
            .order_by(BatchJob.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def add_reserved(self, job_id: UUID, amount: int) -> None:
        """Record credits held by a new pending reservation of the job."""
        await self.session.execute(
            update(BatchJob)
            .where(BatchJob.id == job_id)  # type: ignore[arg-type]
            .values(credits_reserved=BatchJob.credits_reserved + amount)
            .execution_options(synchronize_session=False)
        )

    async def record_item_outcome(
        self,
        job_id: UUID,
        succeeded: bool,
        credits_used: int = 0,
        credits_released: int = 0,
    ) -> None:
        """Increment progress counters for one terminal item.

        Args:
            job_id: Job owning the item
            succeeded: True increments completed_items, False increments failed_items
            credits_used: Credits committed for the item
            credits_released: Credits that stop being held as reserved (committed or refunded)
        """
        values: dict = {
            "credits_used": BatchJob.credits_used + credits_used,
            "credits_reserved": BatchJob.credits_reserved - credits_released,
        }
        if succeeded:
            values["completed_items"] = BatchJob.completed_items + 1
        else:
            values["failed_items"] = BatchJob.failed_items + 1

        await self.session.execute(
            update(BatchJob)
            .where(BatchJob.id == job_id)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def halt(self, job_id: UUID, failure_reason: str | None = None) -> bool:
        """Flag a processing job so workers stop pulling items.

        Args:
            job_id: Job to halt
            failure_reason: Set for infrastructure failures; None means a user cancel

        Returns:
            True if the job was processing and is now flagged
        """
        values: dict = {"cancel_requested": True}
        if failure_reason is not None:
            values = {"failure_reason": failure_reason[:1000]}

        result = await self.session.execute(
            update(BatchJob)
            .where(BatchJob.id == job_id)  # type: ignore[arg-type]
            .where(BatchJob.status == BatchJobStatus.PROCESSING)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def finalize(self, job_id: UUID, status: BatchJobStatus) -> bool:
        """Move a processing job to its terminal status (compare-and-set).

        Returns:
            True if this call finalized the job
        """
        result = await self.session.execute(
            update(BatchJob)
            .where(BatchJob.id == job_id)  # type: ignore[arg-type]
            .where(BatchJob.status == BatchJobStatus.PROCESSING)  # type: ignore[arg-type]
            .values(status=status, finished_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def delete(self, job_id: UUID) -> None:
        """Remove the job row. Items must be deleted first."""
        await self.session.execute(delete(BatchJob).where(BatchJob.id == job_id))  # type: ignore[arg-type]
