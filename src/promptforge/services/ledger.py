"""Credit ledger: the single serialization point for per-user credit balances.

Every balance change happens inside one database transaction that also appends
the matching credit transaction, so at all times

    balance == sum(earned) + sum(refunded) - sum(spent)

Reservations debit the balance up front and are later either committed (no
balance change) or refunded (amount credited back). The two outcomes are
mutually exclusive: settlement is a compare-and-set on the reservation row.

Serialization relies on the database, never on in-process state:
- reserve: conditional UPDATE (credits >= amount) takes the account row lock
- commit/refund: SELECT ... FOR UPDATE on the account row, then CAS on the reservation
- earn: plain increment UPDATE on the account row
"""

from dataclasses import dataclass
from typing import Callable
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import IntegrityError

from promptforge.models.account import Account
from promptforge.models.credit_reservation import CreditReservation, ReservationStatus
from promptforge.models.credit_transaction import CreditTransaction, CreditTransactionType
from promptforge.services.exceptions import InsufficientCreditsError, ValidationError
from promptforge.services.storage import translate_storage_errors

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReservationToken:
    """Handle returned by reserve() and passed back to commit() or refund()."""

    id: UUID
    user_id: str
    amount: int
    idempotency_key: str | None = None
    related_item_id: UUID | None = None

    @classmethod
    def from_reservation(cls, reservation: CreditReservation) -> "ReservationToken":
        return cls(
            id=reservation.id,
            user_id=reservation.user_id,
            amount=reservation.amount,
            idempotency_key=reservation.idempotency_key,
            related_item_id=reservation.related_item_id,
        )


@dataclass
class LedgerAudit:
    """Balance reconciliation for one account."""

    user_id: str
    balance: int
    earned: int
    spent: int
    refunded: int

    @property
    def derived_balance(self) -> int:
        return self.earned + self.refunded - self.spent

    @property
    def consistent(self) -> bool:
        return self.balance == self.derived_balance and self.balance >= 0


class CreditLedger:
    """Atomic reserve / commit / refund / earn operations on credit balances.

    Storage faults surface as InfrastructureError; an insufficient balance is
    the expected InsufficientCreditsError and never mutates anything.
    """

    def __init__(self, uow_factory: Callable):
        """Initialize ledger.

        Args:
            uow_factory: Factory returned by create_uow_factory()
        """
        self._uow_factory = uow_factory

    @staticmethod
    def _check_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(
                f"Credit amount must be a positive integer, got {amount!r}",
                details={"amount": amount},
            )

    async def open_account(self, user_id: str, initial_credits: int = 0) -> bool:
        """Create an account, granting initial credits on first creation only.

        Args:
            user_id: Owner of the new account
            initial_credits: Credits granted as an earned transaction (0 for none)

        Returns:
            True if the account was created by this call
        """
        if initial_credits < 0:
            raise ValidationError("Initial credits cannot be negative")

        created = await self._ensure_account(user_id)
        if created and initial_credits > 0:
            await self.earn(user_id, initial_credits, "Welcome credits")
        return created

    async def _ensure_account(self, user_id: str) -> bool:
        async with translate_storage_errors("ledger.open_account", user_id=user_id):
            try:
                async with await self._uow_factory() as uow:
                    if await uow.accounts.get(user_id) is not None:
                        return False
                    await uow.accounts.add(Account(user_id=user_id, credits=0))
            except IntegrityError:
                # Created concurrently by another caller
                return False

        logger.info("ledger.account_opened", user_id=user_id)
        return True

    async def get_balance(self, user_id: str) -> int:
        """Return the current balance (0 when the user has no account yet)."""
        async with translate_storage_errors("ledger.get_balance", user_id=user_id):
            async with await self._uow_factory() as uow:
                account = await uow.accounts.get(user_id)
                return account.credits if account else 0

    async def list_transactions(self, user_id: str, limit: int = 20) -> list[CreditTransaction]:
        """Return the user's credit history, newest first."""
        async with translate_storage_errors("ledger.list_transactions", user_id=user_id):
            async with await self._uow_factory() as uow:
                return await uow.credit_transactions.list_for_user(user_id, limit=limit)

    async def get_reservation(self, reservation_id: UUID) -> CreditReservation | None:
        """Return the persisted reservation behind a token."""
        async with translate_storage_errors("ledger.get_reservation"):
            async with await self._uow_factory() as uow:
                return await uow.reservations.get_by_id(reservation_id)

    async def find_reservation(self, idempotency_key: str) -> ReservationToken | None:
        """Return the token of the reservation created with idempotency_key, if any."""
        async with translate_storage_errors("ledger.find_reservation"):
            async with await self._uow_factory() as uow:
                reservation = await uow.reservations.get_by_idempotency_key(idempotency_key)
        return ReservationToken.from_reservation(reservation) if reservation else None

    async def reserve(
        self,
        user_id: str,
        amount: int,
        reason: str,
        *,
        idempotency_key: str | None = None,
        related_item_id: UUID | None = None,
    ) -> ReservationToken:
        """Debit credits provisionally and return a reservation token.

        When idempotency_key matches an existing reservation, that reservation's
        token is returned and nothing is debited.

        Args:
            user_id: Account to debit
            amount: Positive number of credits
            reason: Description stored on the spent transaction
            idempotency_key: Caller-chosen unique key for safe replays
            related_item_id: Batch item the credits are reserved for

        Returns:
            ReservationToken for commit() / refund()

        Raises:
            InsufficientCreditsError: Balance lower than amount (nothing written)
            ValidationError: Amount is not a positive integer
            InfrastructureError: Storage fault (nothing written)
        """
        self._check_amount(amount)

        if idempotency_key is not None:
            existing = await self.find_reservation(idempotency_key)
            if existing is not None:
                logger.info(
                    "ledger.reserve_replayed",
                    user_id=user_id,
                    reservation_id=str(existing.id),
                    idempotency_key=idempotency_key,
                )
                return existing

        reservation_id = uuid4()
        async with translate_storage_errors("ledger.reserve", user_id=user_id):
            try:
                async with await self._uow_factory() as uow:
                    if not await uow.accounts.debit_if_sufficient(user_id, amount):
                        account = await uow.accounts.get(user_id)
                        raise InsufficientCreditsError(
                            user_id, amount, account.credits if account else 0
                        )

                    spent = CreditTransaction(
                        user_id=user_id,
                        type=CreditTransactionType.SPENT,
                        amount=amount,
                        description=reason,
                        related_item_id=related_item_id,
                        reservation_id=reservation_id,
                    )
                    reservation = CreditReservation(
                        id=reservation_id,
                        user_id=user_id,
                        amount=amount,
                        reason=reason,
                        idempotency_key=idempotency_key,
                        related_item_id=related_item_id,
                        spent_transaction_id=spent.id,
                    )
                    await uow.credit_transactions.add(spent)
                    await uow.reservations.add(reservation)
            except InsufficientCreditsError as e:
                logger.info(
                    "ledger.insufficient_credits",
                    user_id=user_id,
                    requested=e.requested,
                    available=e.available,
                )
                raise
            except IntegrityError:
                # Lost a race on the same idempotency key; the winner's reservation stands
                if idempotency_key is None:
                    raise
                existing = await self.find_reservation(idempotency_key)
                if existing is None:
                    raise
                return existing

        logger.info(
            "ledger.reserved",
            user_id=user_id,
            amount=amount,
            reservation_id=str(reservation_id),
        )
        return ReservationToken.from_reservation(reservation)

    async def commit(self, token: ReservationToken) -> bool:
        """Settle a reservation as spent. No balance change.

        Idempotent: committing a committed or refunded reservation is a no-op.

        Returns:
            True if this call committed the reservation

        Raises:
            ValidationError: Token does not match a known reservation
        """
        async with translate_storage_errors("ledger.commit", user_id=token.user_id):
            async with await self._uow_factory() as uow:
                await uow.accounts.get_for_update(token.user_id)
                if await uow.reservations.get_by_id(token.id) is None:
                    raise ValidationError(f"Unknown reservation {token.id}")
                committed = await uow.reservations.settle(token.id, ReservationStatus.COMMITTED)

        if committed:
            logger.info(
                "ledger.committed",
                user_id=token.user_id,
                amount=token.amount,
                reservation_id=str(token.id),
            )
        else:
            logger.info("ledger.commit_ignored", reservation_id=str(token.id))
        return committed

    async def refund(self, token: ReservationToken, reason: str) -> bool:
        """Credit a reservation back and append a refunded transaction.

        Idempotent: refunding a refunded or committed reservation is a no-op.

        Returns:
            True if this call refunded the reservation

        Raises:
            ValidationError: Token does not match a known reservation
        """
        async with translate_storage_errors("ledger.refund", user_id=token.user_id):
            async with await self._uow_factory() as uow:
                await uow.accounts.get_for_update(token.user_id)
                reservation = await uow.reservations.get_by_id(token.id)
                if reservation is None:
                    raise ValidationError(f"Unknown reservation {token.id}")

                refund_tx = CreditTransaction(
                    user_id=reservation.user_id,
                    type=CreditTransactionType.REFUNDED,
                    amount=reservation.amount,
                    description=reason,
                    related_item_id=reservation.related_item_id,
                    reservation_id=reservation.id,
                )
                refunded = await uow.reservations.settle(
                    reservation.id,
                    ReservationStatus.REFUNDED,
                    refund_transaction_id=refund_tx.id,
                )
                if refunded:
                    await uow.accounts.credit(reservation.user_id, reservation.amount)
                    await uow.credit_transactions.add(refund_tx)

        if refunded:
            logger.info(
                "ledger.refunded",
                user_id=token.user_id,
                amount=reservation.amount,
                reservation_id=str(token.id),
            )
        else:
            logger.info("ledger.refund_ignored", reservation_id=str(token.id))
        return refunded

    async def earn(self, user_id: str, amount: int, reason: str) -> CreditTransaction:
        """Credit the balance (purchases, coupons, plan renewals, grants).

        Creates the account when it does not exist yet.

        Returns:
            The earned transaction
        """
        self._check_amount(amount)
        await self._ensure_account(user_id)

        earned = CreditTransaction(
            user_id=user_id,
            type=CreditTransactionType.EARNED,
            amount=amount,
            description=reason,
        )
        async with translate_storage_errors("ledger.earn", user_id=user_id):
            async with await self._uow_factory() as uow:
                await uow.accounts.credit(user_id, amount)
                await uow.credit_transactions.add(earned)

        logger.info("ledger.earned", user_id=user_id, amount=amount)
        return earned

    async def audit(self, user_id: str) -> LedgerAudit:
        """Recompute the balance from the transaction log."""
        async with translate_storage_errors("ledger.audit", user_id=user_id):
            async with await self._uow_factory() as uow:
                account = await uow.accounts.get(user_id)
                totals = await uow.credit_transactions.totals_for_user(user_id)

        return LedgerAudit(
            user_id=user_id,
            balance=account.credits if account else 0,
            earned=totals[CreditTransactionType.EARNED],
            spent=totals[CreditTransactionType.SPENT],
            refunded=totals[CreditTransactionType.REFUNDED],
        )
