"""Batch item executor: reserve -> dispatch -> settle -> report, exactly once.

Every step is persisted before the next one starts, so running the executor
again on the same item resumes from the last persisted step:

    reserving    no reservation recorded yet; reserve with an idempotency key
    dispatching  reservation recorded; dispatch unless an outcome is recorded
    dispatching  outcome recorded; commit (result) or refund (error)
    terminal     item CAS plus job counters in one transaction

For every item that leaves reserving exactly one of commit / refund takes
effect; replays land on the ledger's idempotent settlement.

A claim is identified by the item's attempts counter and protected by a lease.
Every item write is fenced on the claim, so once recovery has taken over an
item whose lease ran out, the previous holder's late writes change nothing.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

import structlog

from promptforge.core.timezone import utcnow
from promptforge.models.batch_item import BatchItem, BatchItemStatus
from promptforge.models.batch_job import BatchJob, BatchJobStatus
from promptforge.models.credit_reservation import CreditReservation, ReservationStatus
from promptforge.services.dispatch.adapter import DispatchAdapter
from promptforge.services.exceptions import InsufficientCreditsError, NotFoundError, ProviderError
from promptforge.services.ledger import CreditLedger, ReservationToken
from promptforge.services.storage import translate_storage_errors
from promptforge.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class ItemOutcome:
    """Result reported for one item (queued when recovery returned it to the queue)."""

    item_id: UUID
    status: BatchItemStatus
    credits_charged: int = 0
    error_kind: str | None = None
    job_status: BatchJobStatus | None = None  # set when this item finalized the job


def reservation_key(job_id: UUID, item: BatchItem) -> str:
    """Idempotency key of the reservation for the item's current claim."""
    return f"batch:{job_id}:{item.id}:{item.attempts}"


async def finalize_if_drained(uow: UnitOfWork, job_id: UUID) -> BatchJobStatus | None:
    """Move a processing job to its final status once no item is unfinished.

    Must run after a write to the job row in the same transaction, so the job
    row lock serializes concurrent finalization checks.

    Returns:
        Final status if this call finalized the job, None otherwise
    """
    if await uow.batch_items.count_unfinished(job_id) > 0:
        return None

    job = await uow.batch_jobs.get_by_id(job_id)
    if job is None or job.status != BatchJobStatus.PROCESSING:
        return None

    status = job.final_status()
    if not await uow.batch_jobs.finalize(job_id, status):
        return None
    return status


class BatchItemExecutor:
    """Runs one claimed batch item through its credit and dispatch lifecycle."""

    def __init__(
        self,
        uow_factory: Callable,
        ledger: CreditLedger,
        adapter: DispatchAdapter,
        lease_seconds: float = 1800.0,
    ):
        self._uow_factory = uow_factory
        self._ledger = ledger
        self._adapter = adapter
        self.lease_seconds = lease_seconds

    def lease_deadline(self) -> datetime:
        """End of a lease taken or renewed now."""
        return utcnow() + timedelta(seconds=self.lease_seconds)

    async def load_item(self, item_id: UUID) -> BatchItem:
        async with translate_storage_errors("batch.item.load", item_id=str(item_id)):
            async with await self._uow_factory() as uow:
                item = await uow.batch_items.get_by_id(item_id)
        if item is None:
            raise NotFoundError(f"Batch item {item_id} not found")
        return item

    async def execute(self, job: BatchJob, item_id: UUID, claim: int) -> ItemOutcome | None:
        """Run or resume a claimed item.

        Args:
            job: Job snapshot (id, user_id, name, model_id)
            item_id: Item previously claimed by the caller
            claim: attempts value the caller's claim set on the item

        Returns:
            ItemOutcome when this call reported the item, None if it was not runnable

        Raises:
            InfrastructureError: Storage fault; calling execute() again resumes safely
        """
        item = await self.load_item(item_id)
        log = logger.bind(
            job_id=str(job.id), item_id=str(item.id), sequence_index=item.sequence_index
        )

        if item.attempts != claim:
            log.warning("batch.item.claim_lost", attempts=item.attempts, claim=claim)
            return None

        lease_renewed = False
        if item.status == BatchItemStatus.RESERVING:
            cost = self._adapter.get_descriptor(job.model_id).credit_cost
            try:
                token = await self._ledger.reserve(
                    job.user_id,
                    cost,
                    f"Batch {job.name} item #{item.sequence_index + 1}",
                    idempotency_key=reservation_key(job.id, item),
                    related_item_id=item.id,
                )
            except InsufficientCreditsError as e:
                log.info("batch.item.insufficient_credits", requested=e.requested, available=e.available)
                return await self._finish(
                    job,
                    item,
                    BatchItemStatus.FAILED,
                    error_kind=e.error_kind,
                    error_message=e.message,
                )

            if not await self._mark_dispatching(job, item, token):
                log.warning("batch.item.claim_lost", status=item.status.value)
                await self._ledger.refund(token, "Batch item claim lost")
                return None
            lease_renewed = True

        if item.status != BatchItemStatus.DISPATCHING or item.reservation_id is None:
            log.warning("batch.item.not_runnable", status=item.status.value)
            return None

        if not item.has_outcome:
            if not lease_renewed and not await self._renew_lease(item):
                log.warning("batch.item.claim_lost", attempts=item.attempts)
                return None
            if not await self._dispatch(job, item, log):
                # Recovery took the item over and settled its reservation
                log.warning("batch.item.claim_lost", attempts=item.attempts)
                return None

        reservation = await self._ledger.get_reservation(item.reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation {item.reservation_id} of item {item.id} not found")
        return await self._settle_and_finish(job, item, reservation)

    async def recover(self, job: BatchJob, item: BatchItem) -> ItemOutcome | None:
        """Resolve an item left in flight by a previous process.

        Items with a recorded outcome or a settled reservation are finished;
        anything else gets its pending reservation refunded and is requeued.
        Callers pass items whose claim lease has run out.

        Returns:
            ItemOutcome (status queued when requeued), or None when the item
            changed under recovery and was left to its current holder
        """
        return await self._resolve(job, item, requeue=True)

    async def abandon(
        self, job: BatchJob, item: BatchItem, error_kind: str, error_message: str
    ) -> ItemOutcome | None:
        """Finish an in-flight item of a halted job without dispatching it again."""
        return await self._resolve(
            job, item, requeue=False, error_kind=error_kind, error_message=error_message
        )

    async def _resolve(
        self,
        job: BatchJob,
        item: BatchItem,
        *,
        requeue: bool,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> ItemOutcome | None:
        token: ReservationToken | None = None
        released = 0

        if item.status == BatchItemStatus.DISPATCHING and item.reservation_id is not None:
            reservation = await self._ledger.get_reservation(item.reservation_id)
            if reservation is not None:
                if item.has_outcome or reservation.status != ReservationStatus.PENDING:
                    return await self._settle_and_finish(job, item, reservation)
                token = ReservationToken.from_reservation(reservation)
                released = reservation.amount
        elif item.status == BatchItemStatus.RESERVING:
            # Reserve may have succeeded without being recorded on the item
            token = await self._ledger.find_reservation(reservation_key(job.id, item))
        else:
            return None

        if token is not None:
            refunded = await self._ledger.refund(
                token, f"Refund for interrupted batch item {item.id}"
            )
            if not refunded:
                current = await self._ledger.get_reservation(token.id)
                if current is not None and current.status == ReservationStatus.COMMITTED:
                    # The holder recorded a result and committed; it finishes the item
                    logger.info(
                        "batch.item.settled_by_holder", job_id=str(job.id), item_id=str(item.id)
                    )
                    return None

        if requeue:
            async with translate_storage_errors("batch.item.requeue", item_id=str(item.id)):
                async with await self._uow_factory() as uow:
                    requeued = await uow.batch_items.requeue(item.id, item.status, item.attempts)
                    if requeued and released:
                        await uow.batch_jobs.add_reserved(job.id, -released)
            if not requeued:
                return None
            logger.info("batch.item.requeued", job_id=str(job.id), item_id=str(item.id))
            return ItemOutcome(item_id=item.id, status=BatchItemStatus.QUEUED)

        return await self._finish(
            job,
            item,
            BatchItemStatus.FAILED,
            error_kind=error_kind,
            error_message=error_message,
            credits_released=released,
        )

    async def _mark_dispatching(self, job: BatchJob, item: BatchItem, token: ReservationToken) -> bool:
        async with translate_storage_errors("batch.item.reserved", item_id=str(item.id)):
            async with await self._uow_factory() as uow:
                moved = await uow.batch_items.transition(
                    item.id,
                    BatchItemStatus.RESERVING,
                    BatchItemStatus.DISPATCHING,
                    fence=item.attempts,
                    reservation_id=token.id,
                    lease_expires_at=self.lease_deadline(),
                )
                if moved:
                    await uow.batch_jobs.add_reserved(job.id, token.amount)

        if moved:
            item.status = BatchItemStatus.DISPATCHING
            item.reservation_id = token.id
        return moved

    async def _renew_lease(self, item: BatchItem) -> bool:
        async with translate_storage_errors("batch.item.lease", item_id=str(item.id)):
            async with await self._uow_factory() as uow:
                return await uow.batch_items.renew_lease(
                    item.id, item.attempts, self.lease_deadline()
                )

    async def _dispatch(self, job: BatchJob, item: BatchItem, log) -> bool:
        """Dispatch and record the outcome; False when the claim was lost meanwhile."""
        try:
            result = await self._adapter.dispatch(job.model_id, item.prompt, item.settings)
        except ProviderError as e:
            values = {"error_kind": e.error_kind, "error_message": e.message[:1000]}
            log.warning("batch.item.dispatch_failed", error_kind=e.error_kind, error=e.message)
        else:
            values = {
                "result_ref": result.asset_url,
                "thumbnail_ref": result.thumbnail_url,
                "result_metadata": result.metadata,
            }

        async with translate_storage_errors("batch.item.outcome", item_id=str(item.id)):
            async with await self._uow_factory() as uow:
                recorded = await uow.batch_items.update_outcome(item.id, item.attempts, **values)

        if recorded:
            for key, value in values.items():
                setattr(item, key, value)
        return recorded

    async def _settle_and_finish(
        self, job: BatchJob, item: BatchItem, reservation: CreditReservation
    ) -> ItemOutcome | None:
        token = ReservationToken.from_reservation(reservation)
        status = reservation.status

        if status == ReservationStatus.PENDING:
            if item.result_ref is not None:
                settled = await self._ledger.commit(token)
                target = ReservationStatus.COMMITTED
            else:
                settled = await self._ledger.refund(
                    token, f"Refund for failed batch item ({item.error_kind or 'unknown'})"
                )
                target = ReservationStatus.REFUNDED

            if settled:
                status = target
            else:
                current = await self._ledger.get_reservation(token.id)
                status = current.status if current is not None else ReservationStatus.REFUNDED

        if status == ReservationStatus.COMMITTED:
            return await self._finish(
                job,
                item,
                BatchItemStatus.SUCCEEDED,
                credits_charged=reservation.amount,
                credits_released=reservation.amount,
            )

        return await self._finish(
            job,
            item,
            BatchItemStatus.FAILED,
            error_kind=item.error_kind or "refunded",
            error_message=item.error_message,
            credits_released=reservation.amount,
        )

    async def _finish(
        self,
        job: BatchJob,
        item: BatchItem,
        target: BatchItemStatus,
        *,
        credits_charged: int = 0,
        credits_released: int = 0,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> ItemOutcome | None:
        """Report the terminal state: item CAS, job counters and finalization in one transaction."""
        values: dict = {"finished_at": utcnow(), "credits_charged": credits_charged}
        if error_kind is not None:
            values["error_kind"] = error_kind
            values["error_message"] = (error_message or "")[:1000] or None

        succeeded = target == BatchItemStatus.SUCCEEDED
        async with translate_storage_errors("batch.item.finish", item_id=str(item.id)):
            async with await self._uow_factory() as uow:
                if not await uow.batch_items.transition(
                    item.id, item.status, target, fence=item.attempts, **values
                ):
                    return None
                await uow.batch_jobs.record_item_outcome(
                    job.id,
                    succeeded=succeeded,
                    credits_used=credits_charged,
                    credits_released=credits_released,
                )
                job_status = await finalize_if_drained(uow, job.id)

        item.status = target
        logger.info(
            "batch.item.succeeded" if succeeded else "batch.item.failed",
            job_id=str(job.id),
            item_id=str(item.id),
            credits_charged=credits_charged,
            error_kind=error_kind,
        )
        return ItemOutcome(
            item_id=item.id,
            status=target,
            credits_charged=credits_charged,
            error_kind=error_kind,
            job_status=job_status,
        )
