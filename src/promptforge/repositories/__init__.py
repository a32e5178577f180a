"""Repository layer for the batch generation engine.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from promptforge.repositories.account import AccountRepository
from promptforge.repositories.batch_item import BatchItemRepository
from promptforge.repositories.batch_job import BatchJobRepository
from promptforge.repositories.credit_transaction import CreditTransactionRepository
from promptforge.repositories.reservation import CreditReservationRepository

__all__ = [
    "AccountRepository",
    "BatchItemRepository",
    "BatchJobRepository",
    "CreditReservationRepository",
    "CreditTransactionRepository",
]
