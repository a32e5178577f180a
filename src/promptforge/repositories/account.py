"""Account repository for the credit ledger.

Balance changes are single conditional UPDATE statements so the row lock and the
balance check happen atomically in the database, across processes.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.core.timezone import utcnow
from promptforge.models.account import Account


class AccountRepository:
    """Repository for Account entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(self, user_id: str) -> Account | None:
        """Retrieve account by user ID.

        Args:
            user_id: Owner of the account

        Returns:
            Account if found, None otherwise
        """
        result = await self.session.execute(select(Account).where(Account.user_id == user_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_for_update(self, user_id: str) -> Account | None:
        """Retrieve account and take its row lock until the transaction ends."""
        result = await self.session.execute(
            select(Account)
            .where(Account.user_id == user_id)  # type: ignore[arg-type]
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def add(self, account: Account) -> Account:
        """Persist new account to database.

        Args:
            account: Account entity to persist

        Returns:
            Persisted account
        """
        self.session.add(account)
        await self.session.flush()
        return account

    async def debit_if_sufficient(self, user_id: str, amount: int) -> bool:
        """Debit the balance only when it covers the amount.

        Query explanation:
        - UPDATE accounts SET credits = credits - :amount
        - WHERE user_id = :user_id AND credits >= :amount
        The UPDATE locks the row, so two concurrent debits can never both pass
        the check against a stale balance.

        Args:
            user_id: Owner of the account
            amount: Positive number of credits to debit

        Returns:
            True if the balance was debited, False if it was insufficient (or no account)
        """
        result = await self.session.execute(
            update(Account)
            .where(Account.user_id == user_id)  # type: ignore[arg-type]
            .where(Account.credits >= amount)  # type: ignore[arg-type]
            .values(credits=Account.credits - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def credit(self, user_id: str, amount: int) -> bool:
        """Add credits to the balance.

        Args:
            user_id: Owner of the account
            amount: Positive number of credits to add

        Returns:
            True if the account exists and was credited
        """
        result = await self.session.execute(
            update(Account)
            .where(Account.user_id == user_id)  # type: ignore[arg-type]
            .values(credits=Account.credits + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
