"""Recovery tests.

Most tests leave a job the way a crashed process would (an item stuck in
reserving or dispatching with an expired lease) and check that recovery settles
every reservation exactly once before the job runs to completion. The rest run
recovery next to a live worker and check that it only takes over expired claims.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from pydantic import ValidationError as SettingsError
from sqlalchemy import update

from promptforge.core.config import Settings
from promptforge.core.timezone import utcnow
from promptforge.models.batch_item import BatchItem, BatchItemStatus
from promptforge.models.batch_job import BatchJobStatus
from promptforge.models.credit_reservation import ReservationStatus
from promptforge.services.batch.executor import reservation_key
from promptforge.services.batch.orchestrator import BatchJobOrchestrator
from promptforge.services.exceptions import InfrastructureError
from tests.conftest import ASSET_URL, no_sleep


async def wait_until(condition, timeout: float = 5.0) -> None:
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest_asyncio.fixture
async def second_process(uow_factory, ledger, adapter, events, settings):
    """Another orchestrator on the same database, like a second API process."""
    other = BatchJobOrchestrator(uow_factory, ledger, adapter, events, settings, sleep=no_sleep)
    yield other
    await other.shutdown()


async def interrupted_job(orchestrator, uow_factory, prompts):
    """Create a job, mark it processing and claim its first item without running workers.

    The claim lease has already run out, as it would for a process that crashed.
    """
    job = await orchestrator.create_job("alice", "Interrupted", "test-image", prompts)

    async with await uow_factory() as uow:
        stored = await uow.batch_jobs.get_for_update(job.id)
        stored.mark_processing()
        uow.session.add(stored)

    async with await uow_factory() as uow:
        item = await uow.batch_items.next_queued(job.id)
        assert await uow.batch_items.claim(
            item.id, item.attempts, utcnow() - timedelta(seconds=1)
        )

    item = await orchestrator.executor.load_item(item.id)
    return job, item


async def reserve_for(ledger, uow_factory, job, item, dispatching: bool):
    token = await ledger.reserve(
        "alice",
        2,
        "Batch item",
        idempotency_key=reservation_key(job.id, item),
        related_item_id=item.id,
    )
    if dispatching:
        async with await uow_factory() as uow:
            await uow.batch_items.transition(
                item.id,
                BatchItemStatus.RESERVING,
                BatchItemStatus.DISPATCHING,
                reservation_id=token.id,
            )
            await uow.batch_jobs.add_reserved(job.id, token.amount)
    return token


@pytest.mark.asyncio
async def test_reserving_item_without_reservation_is_requeued(orchestrator, ledger, uow_factory):
    await ledger.earn("alice", 10, "Purchase")
    job, _ = await interrupted_job(orchestrator, uow_factory, ["one", "two"])

    result = await orchestrator.recover_interrupted_jobs()
    assert (result.jobs_found, result.items_requeued, result.jobs_resumed) == (1, 1, 1)

    job = await orchestrator.wait_for_job(job.id, timeout=10)
    assert job.status == BatchJobStatus.COMPLETED
    assert await ledger.get_balance("alice") == 6

    items = await orchestrator.list_items(job.id, "alice")
    assert items[0].attempts == 2


@pytest.mark.asyncio
async def test_unrecorded_reservation_is_refunded_and_item_rerun(orchestrator, ledger, uow_factory):
    """Reserve succeeded but the crash happened before the item recorded it."""
    await ledger.earn("alice", 10, "Purchase")
    job, item = await interrupted_job(orchestrator, uow_factory, ["one"])
    orphan = await reserve_for(ledger, uow_factory, job, item, dispatching=False)

    await orchestrator.recover_interrupted_jobs()
    job = await orchestrator.wait_for_job(job.id, timeout=10)

    assert job.status == BatchJobStatus.COMPLETED
    assert (await ledger.get_reservation(orphan.id)).status == ReservationStatus.REFUNDED
    assert await ledger.get_balance("alice") == 8

    audit = await ledger.audit("alice")
    assert audit.consistent
    assert (audit.spent, audit.refunded) == (4, 2)


@pytest.mark.asyncio
async def test_dispatching_item_without_outcome_is_refunded_and_rerun(
    orchestrator, ledger, uow_factory, fake_transport
):
    await ledger.earn("alice", 10, "Purchase")
    job, item = await interrupted_job(orchestrator, uow_factory, ["one", "two"])
    interrupted = await reserve_for(ledger, uow_factory, job, item, dispatching=True)

    result = await orchestrator.recover_interrupted_jobs()
    assert result.items_requeued == 1

    job = await orchestrator.wait_for_job(job.id, timeout=10)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.credits_reserved == 0
    assert job.credits_used == 4
    assert (await ledger.get_reservation(interrupted.id)).status == ReservationStatus.REFUNDED
    assert await ledger.get_balance("alice") == 6
    assert len(fake_transport.calls) == 2
    assert (await ledger.audit("alice")).consistent


@pytest.mark.asyncio
async def test_recorded_result_is_committed_without_redispatch(
    orchestrator, ledger, uow_factory, fake_transport
):
    await ledger.earn("alice", 10, "Purchase")
    job, item = await interrupted_job(orchestrator, uow_factory, ["one"])
    token = await reserve_for(ledger, uow_factory, job, item, dispatching=True)
    async with await uow_factory() as uow:
        await uow.batch_items.update_outcome(item.id, item.attempts, result_ref=ASSET_URL)

    result = await orchestrator.recover_interrupted_jobs()

    assert (result.items_finished, result.jobs_finalized, result.jobs_resumed) == (1, 1, 0)
    job = await orchestrator.get_job(job.id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.credits_used == 2
    assert fake_transport.calls == []
    assert (await ledger.get_reservation(token.id)).status == ReservationStatus.COMMITTED
    assert await ledger.get_balance("alice") == 8


@pytest.mark.asyncio
async def test_recorded_provider_error_is_refunded_and_failed(orchestrator, ledger, uow_factory):
    await ledger.earn("alice", 10, "Purchase")
    job, item = await interrupted_job(orchestrator, uow_factory, ["one"])
    token = await reserve_for(ledger, uow_factory, job, item, dispatching=True)
    async with await uow_factory() as uow:
        await uow.batch_items.update_outcome(
            item.id, item.attempts, error_kind="permanent", error_message="Content policy violation"
        )

    await orchestrator.recover_interrupted_jobs()

    job = await orchestrator.get_job(job.id)
    assert job.status == BatchJobStatus.COMPLETED_WITH_FAILURES
    items = await orchestrator.list_items(job.id)
    assert items[0].error_kind == "permanent"
    assert (await ledger.get_reservation(token.id)).status == ReservationStatus.REFUNDED
    assert await ledger.get_balance("alice") == 10


@pytest.mark.asyncio
async def test_settled_reservation_finishes_item(orchestrator, ledger, uow_factory):
    """Commit went through but the item never reached succeeded."""
    await ledger.earn("alice", 10, "Purchase")
    job, item = await interrupted_job(orchestrator, uow_factory, ["one"])
    token = await reserve_for(ledger, uow_factory, job, item, dispatching=True)
    async with await uow_factory() as uow:
        await uow.batch_items.update_outcome(item.id, item.attempts, result_ref=ASSET_URL)
    await ledger.commit(token)

    await orchestrator.recover_interrupted_jobs()

    job = await orchestrator.get_job(job.id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.credits_used == 2
    assert await ledger.get_balance("alice") == 8
    assert (await ledger.audit("alice")).refunded == 0


@pytest.mark.asyncio
async def test_cancelled_job_is_finalized_not_resumed(orchestrator, ledger, uow_factory, fake_transport):
    await ledger.earn("alice", 10, "Purchase")
    job, item = await interrupted_job(orchestrator, uow_factory, ["one", "two"])
    await reserve_for(ledger, uow_factory, job, item, dispatching=True)
    async with await uow_factory() as uow:
        await uow.batch_jobs.halt(job.id)

    result = await orchestrator.recover_interrupted_jobs()

    assert (result.jobs_resumed, result.jobs_finalized) == (0, 1)
    job = await orchestrator.get_job(job.id)
    assert job.status == BatchJobStatus.CANCELLED
    items = await orchestrator.list_items(job.id)
    assert {item.status for item in items} == {BatchItemStatus.SKIPPED}
    assert fake_transport.calls == []
    assert await ledger.get_balance("alice") == 10


@pytest.mark.asyncio
async def test_recovery_without_processing_jobs(orchestrator):
    result = await orchestrator.recover_interrupted_jobs()

    assert result.jobs_found == 0
    assert result.errors == []


@pytest.mark.asyncio
async def test_live_claim_is_left_to_its_holder(orchestrator, second_process, ledger, fake_transport):
    await ledger.earn("alice", 10, "Purchase")
    fake_transport.gate = asyncio.Event()
    job = await orchestrator.create_job("alice", "Live", "test-image", ["one"])
    await orchestrator.start_job(job.id, "alice")
    await wait_until(lambda: len(fake_transport.calls) == 1)

    result = await second_process.recover_interrupted_jobs()

    assert (result.jobs_found, result.items_leased) == (1, 1)
    assert (result.items_requeued, result.items_finished) == (0, 0)
    assert (await ledger.audit("alice")).refunded == 0

    fake_transport.gate.set()
    await second_process.wait_for_job(job.id, timeout=10)
    job = await orchestrator.wait_for_job(job.id, timeout=10)

    assert job.status == BatchJobStatus.COMPLETED
    assert (job.credits_used, job.credits_reserved) == (2, 0)
    [item] = await orchestrator.list_items(job.id)
    assert item.status == BatchItemStatus.SUCCEEDED
    assert item.attempts == 1
    assert len(fake_transport.calls) == 1
    assert await ledger.get_balance("alice") == 8
    audit = await ledger.audit("alice")
    assert (audit.spent, audit.refunded) == (2, 0)


@pytest.mark.asyncio
async def test_stale_holder_cannot_overwrite_recovered_item(
    orchestrator, second_process, ledger, uow_factory, fake_transport
):
    """The holder outlives its lease: the item is re-run elsewhere and the late result dropped."""
    await ledger.earn("alice", 10, "Purchase")
    fake_transport.gate = asyncio.Event()
    job = await orchestrator.create_job("alice", "Stale", "test-image", ["one"])
    await orchestrator.start_job(job.id, "alice")
    await wait_until(lambda: len(fake_transport.calls) == 1)

    [stale] = await orchestrator.list_items(job.id)
    async with await uow_factory() as uow:
        await uow.session.execute(
            update(BatchItem)
            .where(BatchItem.id == stale.id)
            .values(lease_expires_at=utcnow() - timedelta(seconds=1))
        )

    result = await second_process.recover_interrupted_jobs()
    assert (result.items_requeued, result.items_leased, result.jobs_resumed) == (1, 0, 1)
    await wait_until(lambda: len(fake_transport.calls) == 2)

    # Both dispatches answer; only the current claim may record its result
    fake_transport.gate.set()
    await orchestrator.wait_for_job(job.id, timeout=10)
    job = await second_process.wait_for_job(job.id, timeout=10)

    assert job.status == BatchJobStatus.COMPLETED
    assert (job.completed_items, job.failed_items) == (1, 0)
    assert (job.credits_used, job.credits_reserved) == (2, 0)
    [item] = await orchestrator.list_items(job.id)
    assert item.status == BatchItemStatus.SUCCEEDED
    assert item.attempts == 2
    assert (await ledger.get_reservation(stale.reservation_id)).status == ReservationStatus.REFUNDED
    assert (await ledger.get_reservation(item.reservation_id)).status == ReservationStatus.COMMITTED
    assert await ledger.get_balance("alice") == 8

    audit = await ledger.audit("alice")
    assert audit.consistent
    assert (audit.spent, audit.refunded) == (4, 2)


@pytest.mark.asyncio
async def test_recovery_sweep_survives_storage_faults(uow_factory, ledger, adapter, events, settings):
    class FlakySweep(BatchJobOrchestrator):
        sweeps = 0

        async def recover_interrupted_jobs(self):
            self.sweeps += 1
            if self.sweeps == 1:
                raise InfrastructureError(
                    "Storage unavailable during batch.recovery.scan: database is locked"
                )
            return await super().recover_interrupted_jobs()

    delays = []

    async def sleep(delay):
        delays.append(delay)
        if len(delays) == 3:
            raise asyncio.CancelledError

    await ledger.earn("alice", 10, "Purchase")
    sweeper = FlakySweep(uow_factory, ledger, adapter, events, settings, sleep=sleep)
    try:
        job, _ = await interrupted_job(sweeper, uow_factory, ["one"])

        with pytest.raises(asyncio.CancelledError):
            await sweeper.run_recovery_loop(60)
        job = await sweeper.wait_for_job(job.id, timeout=10)
    finally:
        await sweeper.shutdown()

    assert delays == [60, 60, 60]
    assert sweeper.sweeps == 2
    assert job.status == BatchJobStatus.COMPLETED
    assert await ledger.get_balance("alice") == 8


def test_lease_must_outlive_slowest_dispatch(database_url):
    with pytest.raises(SettingsError, match="BATCH_ITEM_LEASE_SECONDS"):
        Settings(
            _env_file=None,  # type: ignore[call-arg]
            DATABASE_URL=database_url,
            APP_ENV="test",
            DISPATCH_TIMEOUT_SECONDS=600,
            BATCH_ITEM_LEASE_SECONDS=1000,
        )
