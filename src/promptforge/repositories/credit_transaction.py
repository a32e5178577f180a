"""CreditTransaction repository - append-only, no update or delete methods."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.models.credit_transaction import CreditTransaction, CreditTransactionType


class CreditTransactionRepository:
    """Repository for CreditTransaction entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, transaction: CreditTransaction) -> CreditTransaction:
        """Append a transaction to the log."""
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def list_for_user(self, user_id: str, limit: int = 20) -> list[CreditTransaction]:
        """Retrieve a user's transactions, newest first.

        Args:
            user_id: Owner of the transactions
            limit: Maximum number of transactions to return (default: 20)

        Returns:
            List of transactions ordered by created_at descending
        """
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def totals_for_user(self, user_id: str) -> dict[CreditTransactionType, int]:
        """Sum transaction amounts per type for one user.

        Returns:
            Mapping with an entry for every transaction type (0 when absent)
        """
        result = await self.session.execute(
            select(CreditTransaction.type, func.coalesce(func.sum(CreditTransaction.amount), 0))
            .where(CreditTransaction.user_id == user_id)  # type: ignore[arg-type]
            .group_by(CreditTransaction.type)
        )
        totals = {tx_type: 0 for tx_type in CreditTransactionType}
        for tx_type, total in result.all():
            totals[CreditTransactionType(tx_type)] = int(total)
        return totals
