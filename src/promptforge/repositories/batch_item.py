"""BatchItem repository with worker coordination queries.

Workers claim items with a compare-and-set on the status column, so an item is
owned by exactly one worker even when several processes share the queue. A
claim increments attempts and sets a lease; writes made on behalf of a claim
are fenced on that attempts value, so a worker whose item was taken over by
recovery can no longer change it.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.models.batch_item import (
    IN_FLIGHT_ITEM_STATUSES,
    BatchItem,
    BatchItemStatus,
    check_item_transition,
)


class BatchItemRepository:
    """Repository for BatchItem entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add_many(self, items: list[BatchItem]) -> list[BatchItem]:
        """Persist the items of a new job."""
        self.session.add_all(items)
        await self.session.flush()
        return items

    async def get_by_id(self, item_id: UUID) -> BatchItem | None:
        """Retrieve item by UUID, refreshing any copy already in the session."""
        result = await self.session.execute(
            select(BatchItem)
            .where(BatchItem.id == item_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_job(self, job_id: UUID) -> list[BatchItem]:
        """Retrieve all items of a job in submission order."""
        result = await self.session.execute(
            select(BatchItem)
            .where(BatchItem.job_id == job_id)  # type: ignore[arg-type]
            .order_by(BatchItem.sequence_index.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_in_flight(
        self, job_id: UUID, expired_before: datetime | None = None
    ) -> list[BatchItem]:
        """Retrieve items of a job in reserving or dispatching.

        Args:
            job_id: Job whose items to list
            expired_before: Only return items whose lease ended at or before this time
                (items without a lease count as expired)
        """
        query = (
            select(BatchItem)
            .where(BatchItem.job_id == job_id)  # type: ignore[arg-type]
            .where(BatchItem.status.in_(list(IN_FLIGHT_ITEM_STATUSES)))  # type: ignore[attr-defined]
        )
        if expired_before is not None:
            query = query.where(
                or_(
                    BatchItem.lease_expires_at.is_(None),  # type: ignore[union-attr]
                    BatchItem.lease_expires_at <= expired_before,  # type: ignore[operator]
                )
            )
        result = await self.session.execute(
            query.order_by(BatchItem.sequence_index.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def count_leased(self, job_id: UUID, now: datetime) -> int:
        """Count in-flight items of a job whose claim lease is still running."""
        result = await self.session.execute(
            select(func.count())
            .select_from(BatchItem)
            .where(BatchItem.job_id == job_id)  # type: ignore[arg-type]
            .where(BatchItem.status.in_(list(IN_FLIGHT_ITEM_STATUSES)))  # type: ignore[attr-defined]
            .where(BatchItem.lease_expires_at > now)  # type: ignore[operator]
        )
        return int(result.scalar_one())

    async def next_queued(self, job_id: UUID) -> BatchItem | None:
        """Retrieve the lowest-sequence queued item of a job.

        Uses FOR UPDATE SKIP LOCKED so concurrent workers look at different rows;
        the claim itself is the compare-and-set in claim().
        """
        result = await self.session.execute(
            select(BatchItem)
            .where(BatchItem.job_id == job_id)  # type: ignore[arg-type]
            .where(BatchItem.status == BatchItemStatus.QUEUED)  # type: ignore[arg-type]
            .order_by(BatchItem.sequence_index.asc())  # type: ignore[attr-defined]
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        item_id: UUID,
        current: BatchItemStatus,
        target: BatchItemStatus,
        fence: int | None = None,
        **values: Any,
    ) -> bool:
        """Compare-and-set an item's status, writing extra columns on success.

        Args:
            item_id: Item to update
            current: Status the item must still have
            target: New status
            fence: attempts value of the claim the caller holds (None skips the check)
            **values: Additional column values to write

        Returns:
            True if this call performed the transition

        Raises:
            InvalidStateTransition: If target is not reachable from current
        """
        check_item_transition(current, target)
        query = (
            update(BatchItem)
            .where(BatchItem.id == item_id)  # type: ignore[arg-type]
            .where(BatchItem.status == current)  # type: ignore[arg-type]
        )
        if fence is not None:
            query = query.where(BatchItem.attempts == fence)  # type: ignore[arg-type]
        result = await self.session.execute(
            query.values(status=target, **values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim(self, item_id: UUID, fence: int, lease_expires_at: datetime) -> bool:
        """Claim a queued item for a worker (queued -> reserving).

        Args:
            item_id: Item to claim
            fence: attempts value the caller read with the queued item
            lease_expires_at: End of the claim lease, renewed by the holder

        Returns:
            True if claimed; the claim is then identified by attempts == fence + 1
        """
        return await self.transition(
            item_id,
            BatchItemStatus.QUEUED,
            BatchItemStatus.RESERVING,
            fence=fence,
            attempts=BatchItem.attempts + 1,
            lease_expires_at=lease_expires_at,
        )

    async def requeue(self, item_id: UUID, current: BatchItemStatus, fence: int) -> bool:
        """Return an interrupted item to the queue, discarding partial progress."""
        return await self.transition(
            item_id,
            current,
            BatchItemStatus.QUEUED,
            fence=fence,
            lease_expires_at=None,
            reservation_id=None,
            result_ref=None,
            thumbnail_ref=None,
            result_metadata=None,
            error_kind=None,
            error_message=None,
        )

    async def renew_lease(self, item_id: UUID, fence: int, lease_expires_at: datetime) -> bool:
        """Extend the lease of an in-flight item still held under the given claim."""
        result = await self.session.execute(
            update(BatchItem)
            .where(BatchItem.id == item_id)  # type: ignore[arg-type]
            .where(BatchItem.status.in_(list(IN_FLIGHT_ITEM_STATUSES)))  # type: ignore[attr-defined]
            .where(BatchItem.attempts == fence)  # type: ignore[arg-type]
            .values(lease_expires_at=lease_expires_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def update_outcome(self, item_id: UUID, fence: int, **values: Any) -> bool:
        """Persist a dispatch outcome on an item that is still dispatching.

        Returns:
            True if the item was still dispatching under the caller's claim
        """
        result = await self.session.execute(
            update(BatchItem)
            .where(BatchItem.id == item_id)  # type: ignore[arg-type]
            .where(BatchItem.status == BatchItemStatus.DISPATCHING)  # type: ignore[arg-type]
            .where(BatchItem.attempts == fence)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def skip_queued(self, job_id: UUID) -> int:
        """Mark every queued item of a job as skipped.

        Returns:
            Number of items skipped
        """
        result = await self.session.execute(
            update(BatchItem)
            .where(BatchItem.job_id == job_id)  # type: ignore[arg-type]
            .where(BatchItem.status == BatchItemStatus.QUEUED)  # type: ignore[arg-type]
            .values(status=BatchItemStatus.SKIPPED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def count_unfinished(self, job_id: UUID) -> int:
        """Count items of a job that have not reached a terminal status."""
        result = await self.session.execute(
            select(func.count())
            .select_from(BatchItem)
            .where(BatchItem.job_id == job_id)  # type: ignore[arg-type]
            .where(
                BatchItem.status.in_(  # type: ignore[attr-defined]
                    [BatchItemStatus.QUEUED, *IN_FLIGHT_ITEM_STATUSES]
                )
            )
        )
        return int(result.scalar_one())

    async def delete_for_job(self, job_id: UUID) -> int:
        """Remove all items of a job.

        Returns:
            Number of items deleted
        """
        result = await self.session.execute(delete(BatchItem).where(BatchItem.job_id == job_id))  # type: ignore[arg-type]
        return result.rowcount  # type: ignore[attr-defined]
