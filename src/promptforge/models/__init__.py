"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from promptforge.models.account import Account
from promptforge.models.batch_item import (
    IN_FLIGHT_ITEM_STATUSES,
    TERMINAL_ITEM_STATUSES,
    BatchItem,
    BatchItemStatus,
)
from promptforge.models.batch_job import (
    TERMINAL_JOB_STATUSES,
    BatchJob,
    BatchJobStatus,
    InvalidStateTransition,
)
from promptforge.models.credit_reservation import CreditReservation, ReservationStatus
from promptforge.models.credit_transaction import CreditTransaction, CreditTransactionType

__all__ = [
    "Account",
    "BatchItem",
    "BatchItemStatus",
    "BatchJob",
    "BatchJobStatus",
    "CreditReservation",
    "CreditTransaction",
    "CreditTransactionType",
    "IN_FLIGHT_ITEM_STATUSES",
    "InvalidStateTransition",
    "ReservationStatus",
    "TERMINAL_ITEM_STATUSES",
    "TERMINAL_JOB_STATUSES",
]
