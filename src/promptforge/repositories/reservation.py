"""CreditReservation repository.

Settlement is a compare-and-set on the reservation status, which makes commit and
refund mutually exclusive and idempotent.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.core.timezone import utcnow
from promptforge.models.credit_reservation import CreditReservation, ReservationStatus


class CreditReservationRepository:
    """Repository for CreditReservation entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, reservation: CreditReservation) -> CreditReservation:
        """Persist new reservation to database."""
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def get_by_id(self, reservation_id: UUID) -> CreditReservation | None:
        """Retrieve reservation by UUID."""
        result = await self.session.execute(
            select(CreditReservation).where(CreditReservation.id == reservation_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, key: str) -> CreditReservation | None:
        """Retrieve reservation created with the given idempotency key."""
        result = await self.session.execute(
            select(CreditReservation).where(CreditReservation.idempotency_key == key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def settle(
        self,
        reservation_id: UUID,
        status: ReservationStatus,
        refund_transaction_id: UUID | None = None,
    ) -> bool:
        """Move a pending reservation to a terminal status.

        Query explanation:
        - UPDATE credit_reservations SET status = :status, settled_at = now()
        - WHERE id = :id AND status = 'pending'

        Args:
            reservation_id: Reservation to settle
            status: committed or refunded
            refund_transaction_id: Linked refunded transaction (refunds only)

        Returns:
            True if this call settled the reservation, False if it was already settled
        """
        result = await self.session.execute(
            update(CreditReservation)
            .where(CreditReservation.id == reservation_id)  # type: ignore[arg-type]
            .where(CreditReservation.status == ReservationStatus.PENDING)  # type: ignore[arg-type]
            .values(
                status=status,
                settled_at=utcnow(),
                refund_transaction_id=refund_transaction_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
