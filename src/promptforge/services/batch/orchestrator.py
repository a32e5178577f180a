"""Batch job orchestrator: job lifecycle plus the per-job worker pools.

Workers are asyncio tasks that share the job's queue through the database:
each pull re-reads the job's halt flags, picks the lowest queued
sequence_index (FOR UPDATE SKIP LOCKED) and claims it with a compare-and-set,
so several processes may serve the same job safely.

Claims carry a lease. Recovery (at startup, from the CLI, or the periodic
sweep) only takes over in-flight items whose lease ran out, so it never
competes with a live worker in another process.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping
from uuid import UUID

import structlog

from promptforge.core.config import Settings
from promptforge.core.timezone import utcnow
from promptforge.models.batch_item import BatchItem, BatchItemStatus
from promptforge.models.batch_job import BatchJob, BatchJobStatus, InvalidStateTransition
from promptforge.services.batch.executor import BatchItemExecutor, finalize_if_drained
from promptforge.services.dispatch.adapter import DispatchAdapter
from promptforge.services.events import EventPublisher
from promptforge.services.exceptions import (
    InfrastructureError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from promptforge.services.ledger import CreditLedger
from promptforge.services.prompt_validator import validate_prompt
from promptforge.services.storage import translate_storage_errors

logger = structlog.get_logger(__name__)

MAX_JOB_NAME_LENGTH = 255


@dataclass
class RecoveryResult:
    """Result of a startup recovery pass."""

    jobs_found: int = 0  # Jobs found in processing
    jobs_resumed: int = 0  # Jobs whose worker pool was relaunched
    jobs_finalized: int = 0  # Jobs that reached a terminal status during recovery
    items_requeued: int = 0
    items_finished: int = 0
    items_leased: int = 0  # In flight under a live lease, left to their holder
    errors: list[str] = field(default_factory=list)


class BatchJobOrchestrator:
    """Creates, starts, cancels and deletes batch jobs and runs their workers."""

    def __init__(
        self,
        uow_factory: Callable,
        ledger: CreditLedger,
        adapter: DispatchAdapter,
        events: EventPublisher,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize orchestrator.

        Args:
            uow_factory: Factory returned by create_uow_factory()
            ledger: Credit ledger shared with the rest of the application
            adapter: Provider dispatch adapter
            events: Publisher for batch_create / batch_start / batch_complete
            settings: Application settings (pool size, limits, retry policy)
            sleep: Awaitable used between infrastructure retries (replaced in tests)
        """
        self._uow_factory = uow_factory
        self._adapter = adapter
        self._events = events
        self._settings = settings
        self._sleep = sleep
        self.executor = BatchItemExecutor(
            uow_factory, ledger, adapter, lease_seconds=settings.batch_item_lease_seconds
        )
        self._pools: dict[UUID, asyncio.Task] = {}

    # Job lifecycle

    async def create_job(
        self,
        user_id: str,
        name: str,
        model_id: str,
        prompts: list[Any],
        settings: Mapping[str, Any] | None = None,
    ) -> BatchJob:
        """Validate and persist a pending job with one queued item per prompt.

        Args:
            user_id: Owner of the job
            name: Display name
            model_id: Catalog model key
            prompts: Prompt strings or {"prompt": ..., "settings": {...}} mappings
            settings: Job-level generation settings (per-item settings override them)

        Raises:
            ValidationError: Nothing is persisted
        """
        name = name.strip() if isinstance(name, str) else ""
        if not name:
            raise ValidationError("Job name cannot be empty")
        if len(name) > MAX_JOB_NAME_LENGTH:
            raise ValidationError(f"Job name exceeds {MAX_JOB_NAME_LENGTH} characters")

        self._adapter.get_descriptor(model_id)

        if settings is not None and not isinstance(settings, Mapping):
            raise ValidationError("Job settings must be an object")

        if not prompts:
            raise ValidationError("A batch needs at least one prompt")
        if len(prompts) > self._settings.batch_max_items:
            raise ValidationError(
                f"A batch holds at most {self._settings.batch_max_items} prompts (got {len(prompts)})",
                details={"max_items": self._settings.batch_max_items, "count": len(prompts)},
            )

        job = BatchJob(user_id=user_id, name=name, model_id=model_id, total_items=len(prompts))
        items = []
        for index, entry in enumerate(prompts):
            text, item_settings = self._parse_prompt(index, entry, settings or {})
            items.append(
                BatchItem(job_id=job.id, sequence_index=index, prompt=text, settings=item_settings)
            )

        async with translate_storage_errors("batch.job.create", user_id=user_id):
            async with await self._uow_factory() as uow:
                await uow.batch_jobs.add(job)
                await uow.batch_items.add_many(items)

        logger.info(
            "batch.job.created",
            job_id=str(job.id),
            user_id=user_id,
            model_id=model_id,
            total_items=job.total_items,
        )
        self._events.publish(
            "batch_create",
            job_id=str(job.id),
            user_id=user_id,
            model_id=model_id,
            total_items=job.total_items,
        )
        return job

    def _parse_prompt(
        self, index: int, entry: Any, job_settings: Mapping[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        item_settings = dict(job_settings)
        if isinstance(entry, Mapping):
            overrides = entry.get("settings") or {}
            if not isinstance(overrides, Mapping):
                raise ValidationError(
                    f"Prompt #{index + 1}: settings must be an object", details={"index": index}
                )
            item_settings.update(overrides)
            entry = entry.get("prompt")

        try:
            text = validate_prompt(entry, self._settings.prompt_max_length)
        except ValidationError as e:
            raise ValidationError(
                f"Prompt #{index + 1}: {e.message}", details={"index": index, **e.details}
            ) from e
        return text, item_settings

    async def start_job(self, job_id: UUID, user_id: str | None = None) -> BatchJob:
        """Move a pending job to processing and launch its worker pool.

        Raises:
            NotFoundError: Unknown job, or not owned by user_id
            InvalidStateError: Job is not pending
        """
        async with translate_storage_errors("batch.job.start", job_id=str(job_id)):
            async with await self._uow_factory() as uow:
                job = await self._get_owned(uow, job_id, user_id, for_update=True)
                try:
                    job.mark_processing()
                except InvalidStateTransition as e:
                    raise InvalidStateError(str(e), details={"status": job.status.value}) from e
                uow.session.add(job)

        logger.info("batch.job.started", job_id=str(job.id), total_items=job.total_items)
        self._events.publish(
            "batch_start", job_id=str(job.id), user_id=job.user_id, total_items=job.total_items
        )
        self._launch(job)
        return job

    async def cancel_job(self, job_id: UUID, user_id: str | None = None) -> BatchJob:
        """Cancel a job.

        Pending jobs are cancelled at once. Processing jobs stop pulling items:
        queued items are skipped, in-flight items finish normally and the last of
        them finalizes the job as cancelled. Terminal jobs are left unchanged.

        Raises:
            NotFoundError: Unknown job, or not owned by user_id
        """
        final_status = None
        async with translate_storage_errors("batch.job.cancel", job_id=str(job_id)):
            async with await self._uow_factory() as uow:
                job = await self._get_owned(uow, job_id, user_id, for_update=True)

                if job.is_terminal:
                    logger.info("batch.job.cancel_ignored", job_id=str(job_id), status=job.status.value)
                    return job

                if job.status == BatchJobStatus.PENDING:
                    skipped = await uow.batch_items.skip_queued(job_id)
                    job.mark_cancelled()
                    uow.session.add(job)
                    final_status = BatchJobStatus.CANCELLED
                else:
                    await uow.batch_jobs.halt(job_id)
                    skipped = await uow.batch_items.skip_queued(job_id)
                    final_status = await finalize_if_drained(uow, job_id)

        logger.info("batch.job.cancel_requested", job_id=str(job_id), items_skipped=skipped)
        if final_status is not None:
            self._job_finished(job, final_status)
        return await self.get_job(job_id)

    async def delete_job(self, job_id: UUID, user_id: str | None = None) -> None:
        """Remove a terminal job and its items. Credit history is kept.

        Raises:
            NotFoundError: Unknown job, or not owned by user_id
            InvalidStateError: Job is pending or processing
        """
        async with translate_storage_errors("batch.job.delete", job_id=str(job_id)):
            async with await self._uow_factory() as uow:
                job = await self._get_owned(uow, job_id, user_id, for_update=True)
                if not job.is_terminal:
                    raise InvalidStateError(
                        f"Cannot delete job in {job.status.value} state. Cancel it first.",
                        details={"status": job.status.value},
                    )
                deleted_items = await uow.batch_items.delete_for_job(job_id)
                await uow.batch_jobs.delete(job_id)

        logger.info("batch.job.deleted", job_id=str(job_id), items_deleted=deleted_items)

    async def get_job(self, job_id: UUID, user_id: str | None = None) -> BatchJob:
        """Return the job with its current progress counters.

        Raises:
            NotFoundError: Unknown job, or not owned by user_id
        """
        async with translate_storage_errors("batch.job.get", job_id=str(job_id)):
            async with await self._uow_factory() as uow:
                return await self._get_owned(uow, job_id, user_id)

    async def list_jobs(self, user_id: str, limit: int = 20, offset: int = 0) -> list[BatchJob]:
        async with translate_storage_errors("batch.job.list", user_id=user_id):
            async with await self._uow_factory() as uow:
                return await uow.batch_jobs.list_for_user(user_id, limit=limit, offset=offset)

    async def list_items(self, job_id: UUID, user_id: str | None = None) -> list[BatchItem]:
        async with translate_storage_errors("batch.item.list", job_id=str(job_id)):
            async with await self._uow_factory() as uow:
                await self._get_owned(uow, job_id, user_id)
                return await uow.batch_items.list_for_job(job_id)

    @staticmethod
    async def _get_owned(uow, job_id: UUID, user_id: str | None, for_update: bool = False) -> BatchJob:
        if for_update:
            job = await uow.batch_jobs.get_for_update(job_id)
        else:
            job = await uow.batch_jobs.get_by_id(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise NotFoundError(f"Batch job {job_id} not found")
        return job

    # Worker pool

    def is_running(self, job_id: UUID) -> bool:
        task = self._pools.get(job_id)
        return task is not None and not task.done()

    def _launch(self, job: BatchJob) -> bool:
        if self.is_running(job.id):
            return False

        descriptor = self._adapter.get_descriptor(job.model_id)
        pool_size = max(1, min(self._settings.batch_worker_pool_size, descriptor.max_concurrency_hint))
        task = asyncio.create_task(self._run_pool(job, pool_size), name=f"batch-job-{job.id}")
        self._pools[job.id] = task

        def _forget(done: asyncio.Task, job_id: UUID = job.id) -> None:
            if self._pools.get(job_id) is done:
                del self._pools[job_id]

        task.add_done_callback(_forget)
        return True

    async def _run_pool(self, job: BatchJob, pool_size: int) -> None:
        logger.info("batch.job.workers_started", job_id=str(job.id), pool_size=pool_size)
        await asyncio.gather(*(self._worker(job, index) for index in range(pool_size)))
        logger.info("batch.job.workers_stopped", job_id=str(job.id))

    async def _worker(self, job: BatchJob, worker_index: int) -> None:
        """Pull and run items until the queue is empty or the job is halted."""
        log = logger.bind(job_id=str(job.id), worker=worker_index)
        while True:
            claimed = await self._with_retries(job, None, lambda: self._claim_next(job))
            if claimed is None:
                log.debug("batch.worker.idle")
                return

            item_id, claim = claimed
            outcome = await self._with_retries(
                job,
                item_id,
                lambda item_id=item_id, claim=claim: self.executor.execute(job, item_id, claim),
                claim=claim,
            )
            if outcome is not None and outcome.job_status is not None:
                self._job_finished(job, outcome.job_status)

    async def _claim_next(self, job: BatchJob) -> tuple[UUID, int] | None:
        """Claim the next queued item.

        Returns:
            (item_id, claim) where claim is the item's new attempts value, or None
            when there is nothing to do
        """
        while True:
            async with translate_storage_errors("batch.worker.claim", job_id=str(job.id)):
                async with await self._uow_factory() as uow:
                    current = await uow.batch_jobs.get_by_id(job.id)
                    if current is None or current.is_halted:
                        return None

                    item = await uow.batch_items.next_queued(job.id)
                    if item is None:
                        return None
                    if await uow.batch_items.claim(
                        item.id, item.attempts, self.executor.lease_deadline()
                    ):
                        return item.id, item.attempts + 1
            # Another worker claimed it first

    async def _with_retries(
        self,
        job: BatchJob,
        item_id: UUID | None,
        operation: Callable[[], Awaitable],
        claim: int | None = None,
    ):
        """Run a storage-bound worker step, retrying infrastructure faults.

        When retries are exhausted (or the step fails unexpectedly) the job is
        halted as failed and None is returned so the worker stops.
        """
        max_retries = self._settings.orchestrator_max_item_retries
        for attempt in range(1, max_retries + 1):
            try:
                return await operation()
            except InfrastructureError as e:
                if attempt >= max_retries:
                    await self._halt_failed(job, item_id, e, claim)
                    return None
                logger.warning(
                    "batch.worker.infrastructure_retry",
                    job_id=str(job.id),
                    item_id=str(item_id) if item_id else None,
                    attempt=attempt,
                    error=e.message,
                )
                await self._sleep(self._settings.orchestrator_retry_delay_seconds * attempt)
            except Exception as e:
                logger.error(
                    "batch.worker.unexpected_error",
                    job_id=str(job.id),
                    item_id=str(item_id) if item_id else None,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await self._halt_failed(job, item_id, e, claim)
                return None
        return None

    async def _halt_failed(
        self, job: BatchJob, item_id: UUID | None, error: Exception, claim: int | None = None
    ) -> None:
        """Fail the job: flag it, skip queued items, settle the item that broke."""
        reason = f"{type(error).__name__}: {error}"
        logger.error("batch.job.halting", job_id=str(job.id), reason=reason)

        try:
            async with translate_storage_errors("batch.job.halt", job_id=str(job.id)):
                async with await self._uow_factory() as uow:
                    await uow.batch_jobs.halt(job.id, failure_reason=reason)
                    await uow.batch_items.skip_queued(job.id)
                    final_status = await finalize_if_drained(uow, job.id)

            if item_id is not None:
                item = await self.executor.load_item(item_id)
                # Another claim means recovery already took the item over
                if claim is None or item.attempts == claim:
                    outcome = await self.executor.abandon(
                        job, item, error_kind=InfrastructureError.error_kind, error_message=reason
                    )
                    if outcome is not None and outcome.job_status is not None:
                        final_status = outcome.job_status
        except InfrastructureError as e:
            # Left for recover_interrupted_jobs() on the next start
            logger.error("batch.job.halt_failed", job_id=str(job.id), error=e.message)
            return

        if final_status is not None:
            self._job_finished(job, final_status)

    def _job_finished(self, job: BatchJob, status: BatchJobStatus) -> None:
        logger.info("batch.job.finished", job_id=str(job.id), status=status.value)
        self._events.publish(
            "batch_complete", job_id=str(job.id), user_id=job.user_id, status=status.value
        )

    async def wait_for_job(self, job_id: UUID, timeout: float | None = None) -> BatchJob:
        """Wait until this process has no workers left for the job, then return it."""
        task = self._pools.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.get_job(job_id)

    async def wait_for_all(self) -> None:
        """Wait until every worker pool started by this process has stopped."""
        while self._pools:
            await asyncio.gather(*self._pools.values(), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-process worker pools.

        Items they were running stay in flight until their lease runs out; the
        next recovery pass (sweep, startup or CLI) then resolves them.
        """
        tasks = list(self._pools.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pools.clear()
        if tasks:
            logger.info("batch.orchestrator.stopped", pools_cancelled=len(tasks))

    # Recovery

    async def recover_interrupted_jobs(self) -> RecoveryResult:
        """Resolve in-flight items whose claim lease ran out and resume their jobs.

        Items under a live lease belong to a running worker (in this or another
        process) and are left alone, so recovery is safe to run at any time.
        """
        result = RecoveryResult()
        now = utcnow()

        async with translate_storage_errors("batch.recovery.scan"):
            async with await self._uow_factory() as uow:
                jobs = await uow.batch_jobs.list_by_status(BatchJobStatus.PROCESSING)
        result.jobs_found = len(jobs)

        for job in jobs:
            try:
                await self._recover_job(job, result, now)
            except InfrastructureError as e:
                result.errors.append(f"{job.id}: {e.message}")
                logger.error("batch.recovery.job_failed", job_id=str(job.id), error=e.message)

        logger.info(
            "batch.recovery.completed",
            jobs_found=result.jobs_found,
            jobs_resumed=result.jobs_resumed,
            jobs_finalized=result.jobs_finalized,
            items_requeued=result.items_requeued,
            items_finished=result.items_finished,
            items_leased=result.items_leased,
        )
        return result

    async def run_recovery_loop(self, interval: float) -> None:
        """Run recover_interrupted_jobs() every interval seconds until cancelled."""
        while True:
            await self._sleep(interval)
            try:
                await self.recover_interrupted_jobs()
            except InfrastructureError as e:
                logger.error("batch.recovery.sweep_failed", error=e.message)

    async def _recover_job(self, job: BatchJob, result: RecoveryResult, now: datetime) -> None:
        async with translate_storage_errors("batch.recovery.items", job_id=str(job.id)):
            async with await self._uow_factory() as uow:
                expired = await uow.batch_items.list_in_flight(job.id, expired_before=now)
                result.items_leased += await uow.batch_items.count_leased(job.id, now)

        final_status = None
        for item in expired:
            outcome = await self.executor.recover(job, item)
            if outcome is None:
                continue
            if outcome.status == BatchItemStatus.QUEUED:
                result.items_requeued += 1
            else:
                result.items_finished += 1
                final_status = outcome.job_status or final_status

        if final_status is None:
            async with translate_storage_errors("batch.recovery.resume", job_id=str(job.id)):
                async with await self._uow_factory() as uow:
                    current = await uow.batch_jobs.get_for_update(job.id)
                    halted = current is None or current.is_halted
                    if current is not None and halted:
                        await uow.batch_items.skip_queued(job.id)
                    final_status = await finalize_if_drained(uow, job.id)

            if final_status is None and not halted and self._launch(job):
                result.jobs_resumed += 1

        if final_status is not None:
            result.jobs_finalized += 1
            self._job_finished(job, final_status)
