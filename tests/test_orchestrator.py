"""Batch job orchestrator tests.

Tests focus on the end-to-end behavior of a batch:
- Partial success when credits run out mid-batch
- Cancellation of pending and processing jobs
- Provider retries charging exactly once
- Storage failures failing the job without leaking credits
- Storage faults during settlement retried without charging twice
- Progress counters only moving forward
- Job validation and ownership
"""

import asyncio

import pytest

from promptforge.models.batch_item import BatchItemStatus
from promptforge.models.batch_job import BatchJobStatus
from promptforge.models.credit_reservation import ReservationStatus
from promptforge.models.credit_transaction import CreditTransactionType
from promptforge.services.batch.orchestrator import BatchJobOrchestrator
from promptforge.services.exceptions import (
    InfrastructureError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from promptforge.services.ledger import CreditLedger
from tests.conftest import ASSET_URL, no_sleep

PROMPTS = ["red sneaker", "blue sneaker", "green sneaker", "black sneaker", "white sneaker"]


async def wait_until(condition, timeout: float = 5.0) -> None:
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


async def run_job(orchestrator, user_id: str, prompts, model_id: str = "test-image", **kwargs):
    job = await orchestrator.create_job(user_id, "Sneakers", model_id, prompts, **kwargs)
    await orchestrator.start_job(job.id, user_id)
    return await orchestrator.wait_for_job(job.id, timeout=10)


@pytest.mark.asyncio
async def test_all_items_succeed(orchestrator, ledger, recorder, events):
    await ledger.earn("alice", 20, "Purchase")

    job = await run_job(orchestrator, "alice", PROMPTS[:3])

    assert job.status == BatchJobStatus.COMPLETED
    assert (job.completed_items, job.failed_items) == (3, 0)
    assert job.credits_used == 6
    assert job.credits_reserved == 0
    assert job.finished_at is not None
    assert await ledger.get_balance("alice") == 14

    items = await orchestrator.list_items(job.id, "alice")
    assert [item.status for item in items] == [BatchItemStatus.SUCCEEDED] * 3
    assert all(item.result_ref == ASSET_URL and item.credits_charged == 2 for item in items)

    await events.drain()
    assert recorder.names() == ["batch_create", "batch_start", "batch_complete"]
    assert recorder.events[-1][1]["status"] == "completed"


@pytest.mark.asyncio
async def test_credits_run_out_mid_batch(orchestrator, ledger):
    """5 prompts at cost 2 with a balance of 6: 3 succeed, 2 fail, balance reaches 0."""
    await ledger.earn("alice", 6, "Purchase")

    job = await run_job(orchestrator, "alice", PROMPTS)

    assert job.status == BatchJobStatus.COMPLETED_WITH_FAILURES
    assert (job.completed_items, job.failed_items, job.processed_items) == (3, 2, 5)
    assert job.credits_used == 6
    assert await ledger.get_balance("alice") == 0

    items = await orchestrator.list_items(job.id, "alice")
    assert [item.status for item in items] == [BatchItemStatus.SUCCEEDED] * 3 + [
        BatchItemStatus.FAILED
    ] * 2
    assert [item.error_kind for item in items[3:]] == ["insufficient_credits"] * 2
    assert all(item.credits_charged == 0 for item in items[3:])

    audit = await ledger.audit("alice")
    assert audit.consistent
    assert (audit.spent, audit.refunded) == (6, 0)


@pytest.mark.asyncio
async def test_transient_failures_charge_once(orchestrator, ledger, fake_transport):
    await ledger.earn("alice", 10, "Purchase")
    fake_transport.responses = [ConnectionError("reset"), Exception("503 Service Unavailable")]

    job = await run_job(orchestrator, "alice", PROMPTS[:1])

    assert job.status == BatchJobStatus.COMPLETED
    assert len(fake_transport.calls) == 3
    assert await ledger.get_balance("alice") == 8

    types = [tx.type for tx in await ledger.list_transactions("alice")]
    assert types.count(CreditTransactionType.SPENT) == 1
    assert CreditTransactionType.REFUNDED not in types


@pytest.mark.asyncio
async def test_provider_failure_refunds_item(orchestrator, ledger, fake_transport):
    await ledger.earn("alice", 10, "Purchase")
    fake_transport.responses = [Exception("Content policy violation: NSFW")]

    job = await run_job(orchestrator, "alice", PROMPTS[:2])

    assert job.status == BatchJobStatus.COMPLETED_WITH_FAILURES
    assert job.credits_used == 2
    assert await ledger.get_balance("alice") == 8

    items = await orchestrator.list_items(job.id, "alice")
    assert items[0].status == BatchItemStatus.FAILED
    assert items[0].error_kind == "permanent"
    assert "Content policy" in items[0].error_message
    assert items[0].result_ref is None
    assert items[1].status == BatchItemStatus.SUCCEEDED

    reservations = [
        await ledger.get_reservation(item.reservation_id) for item in items
    ]
    assert [r.status for r in reservations] == [
        ReservationStatus.REFUNDED,
        ReservationStatus.COMMITTED,
    ]
    assert (await ledger.audit("alice")).consistent


@pytest.mark.asyncio
async def test_per_prompt_settings_override_job_settings(orchestrator, ledger, fake_transport):
    await ledger.earn("alice", 10, "Purchase")

    await run_job(
        orchestrator,
        "alice",
        ["plain", {"prompt": "tall", "settings": {"size": "1024x1792"}}],
        settings={"size": "1792x1024", "seed": 9},
    )

    payloads = [payload for _, payload in fake_transport.calls]
    assert payloads == [
        {"prompt": "plain", "aspect_ratio": "16:9", "seed": 9},
        {"prompt": "tall", "aspect_ratio": "9:16", "seed": 9},
    ]


@pytest.mark.asyncio
async def test_cancel_pending_job(orchestrator, ledger, recorder, events):
    job = await orchestrator.create_job("alice", "Sneakers", "test-image", PROMPTS)

    cancelled = await orchestrator.cancel_job(job.id, "alice")

    assert cancelled.status == BatchJobStatus.CANCELLED
    items = await orchestrator.list_items(job.id, "alice")
    assert {item.status for item in items} == {BatchItemStatus.SKIPPED}
    assert await ledger.list_transactions("alice") == []

    await events.drain()
    assert recorder.names() == ["batch_create", "batch_complete"]


@pytest.mark.asyncio
async def test_cancel_processing_job_lets_in_flight_items_finish(
    orchestrator, ledger, fake_transport, settings
):
    """Cancel after 2 of 5 items started: both finish, the rest are skipped."""
    settings.batch_worker_pool_size = 2
    await ledger.earn("alice", 20, "Purchase")
    fake_transport.gate = asyncio.Event()

    job = await orchestrator.create_job("alice", "Sneakers", "test-image", PROMPTS)
    await orchestrator.start_job(job.id, "alice")
    await wait_until(lambda: len(fake_transport.calls) == 2)

    requested = await orchestrator.cancel_job(job.id, "alice")
    assert requested.status == BatchJobStatus.PROCESSING
    assert requested.cancel_requested

    fake_transport.gate.set()
    job = await orchestrator.wait_for_job(job.id, timeout=10)

    assert job.status == BatchJobStatus.CANCELLED
    assert (job.completed_items, job.failed_items) == (2, 0)
    assert job.credits_reserved == 0
    items = await orchestrator.list_items(job.id, "alice")
    assert [item.status for item in items[:2]] == [BatchItemStatus.SUCCEEDED] * 2
    assert {item.status for item in items[2:]} == {BatchItemStatus.SKIPPED}
    assert all(item.reservation_id is None for item in items[2:])
    assert await ledger.get_balance("alice") == 16
    assert len(fake_transport.calls) == 2


@pytest.mark.asyncio
async def test_cancel_finished_job_is_noop(orchestrator, ledger):
    await ledger.earn("alice", 10, "Purchase")
    job = await run_job(orchestrator, "alice", PROMPTS[:1])

    again = await orchestrator.cancel_job(job.id, "alice")

    assert again.status == BatchJobStatus.COMPLETED
    assert not again.cancel_requested


@pytest.mark.asyncio
async def test_start_requires_pending(orchestrator, ledger):
    await ledger.earn("alice", 10, "Purchase")
    job = await run_job(orchestrator, "alice", PROMPTS[:1])

    with pytest.raises(InvalidStateError):
        await orchestrator.start_job(job.id, "alice")


@pytest.mark.asyncio
async def test_delete_only_terminal_jobs(orchestrator, ledger):
    await ledger.earn("alice", 10, "Purchase")
    pending = await orchestrator.create_job("alice", "Sneakers", "test-image", PROMPTS[:1])

    with pytest.raises(InvalidStateError, match="Cancel it first"):
        await orchestrator.delete_job(pending.id, "alice")

    done = await run_job(orchestrator, "alice", PROMPTS[:1])
    await orchestrator.delete_job(done.id, "alice")

    with pytest.raises(NotFoundError):
        await orchestrator.get_job(done.id, "alice")
    # Credit history outlives the job
    assert len(await ledger.list_transactions("alice")) == 2


@pytest.mark.asyncio
async def test_jobs_are_private_to_their_owner(orchestrator):
    job = await orchestrator.create_job("alice", "Sneakers", "test-image", PROMPTS[:1])

    with pytest.raises(NotFoundError):
        await orchestrator.get_job(job.id, "mallory")
    with pytest.raises(NotFoundError):
        await orchestrator.start_job(job.id, "mallory")
    with pytest.raises(NotFoundError):
        await orchestrator.cancel_job(job.id, "mallory")

    assert [j.id for j in await orchestrator.list_jobs("alice")] == [job.id]
    assert await orchestrator.list_jobs("mallory") == []


@pytest.mark.asyncio
async def test_progress_counters_never_decrease(orchestrator, ledger, settings):
    settings.batch_worker_pool_size = 3
    await ledger.earn("alice", 100, "Purchase")

    job = await orchestrator.create_job("alice", "Sneakers", "test-image", PROMPTS * 2)
    await orchestrator.start_job(job.id, "alice")

    snapshots = []

    async def watch():
        while True:
            current = await orchestrator.get_job(job.id, "alice")
            snapshots.append((current.processed_items, current.credits_used))
            if current.is_terminal:
                return current
            await asyncio.sleep(0)

    final = await asyncio.wait_for(watch(), timeout=10)

    assert final.status == BatchJobStatus.COMPLETED
    assert snapshots == sorted(snapshots)
    assert snapshots[-1] == (10, 20)


@pytest.mark.asyncio
async def test_storage_failure_fails_job(uow_factory, adapter, events, settings, fake_transport):
    class BrokenLedger(CreditLedger):
        async def reserve(self, *args, **kwargs):
            raise InfrastructureError("Storage unavailable during ledger.reserve: disk I/O error")

    ledger = BrokenLedger(uow_factory)
    await ledger.earn("alice", 10, "Purchase")
    orchestrator = BatchJobOrchestrator(uow_factory, ledger, adapter, events, settings, sleep=no_sleep)
    try:
        job = await run_job(orchestrator, "alice", PROMPTS[:3])
    finally:
        await orchestrator.shutdown()

    assert job.status == BatchJobStatus.FAILED
    assert "disk I/O error" in job.failure_reason
    items = await orchestrator.list_items(job.id, "alice")
    assert items[0].status == BatchItemStatus.FAILED
    assert items[0].error_kind == "infrastructure"
    assert {item.status for item in items[1:]} == {BatchItemStatus.SKIPPED}
    assert fake_transport.calls == []
    assert await ledger.get_balance("alice") == 10


@pytest.mark.asyncio
async def test_commit_fault_is_retried_and_charges_once(
    uow_factory, adapter, events, settings, fake_transport
):
    """A storage fault after the result is recorded resumes at settlement."""

    class FlakyLedger(CreditLedger):
        failures = 1

        async def commit(self, token):
            if self.failures:
                self.failures -= 1
                raise InfrastructureError("Storage unavailable during ledger.commit: connection reset")
            return await super().commit(token)

    ledger = FlakyLedger(uow_factory)
    await ledger.earn("alice", 10, "Purchase")
    orchestrator = BatchJobOrchestrator(uow_factory, ledger, adapter, events, settings, sleep=no_sleep)
    try:
        job = await run_job(orchestrator, "alice", PROMPTS[:1])
    finally:
        await orchestrator.shutdown()

    assert ledger.failures == 0
    assert job.status == BatchJobStatus.COMPLETED
    assert (job.completed_items, job.credits_used, job.credits_reserved) == (1, 2, 0)
    items = await orchestrator.list_items(job.id, "alice")
    assert items[0].status == BatchItemStatus.SUCCEEDED
    assert items[0].credits_charged == 2
    assert (await ledger.get_reservation(items[0].reservation_id)).status == ReservationStatus.COMMITTED
    assert len(fake_transport.calls) == 1

    types = [tx.type for tx in await ledger.list_transactions("alice")]
    assert types.count(CreditTransactionType.SPENT) == 1
    assert CreditTransactionType.REFUNDED not in types
    assert await ledger.get_balance("alice") == 8


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"name": "  "}, "name cannot be empty"),
        ({"name": "x" * 256}, "exceeds 255"),
        ({"model_id": "imaginary-model"}, "Unknown model"),
        ({"prompts": []}, "at least one prompt"),
        ({"prompts": ["ok"] * 101}, "at most 100"),
        ({"prompts": ["ok", "   "]}, "Prompt #2"),
        ({"prompts": ["ok", 42]}, "Prompt #2"),
        ({"prompts": ["x" * 1001]}, "Prompt #1"),
        ({"prompts": [{"prompt": "ok", "settings": "hd"}]}, "settings must be an object"),
        ({"settings": ["hd"]}, "settings must be an object"),
    ],
)
@pytest.mark.asyncio
async def test_create_job_validation(orchestrator, ledger, kwargs, message):
    arguments = {"name": "Sneakers", "model_id": "test-image", "prompts": ["ok"], **kwargs}

    with pytest.raises(ValidationError, match=message):
        await orchestrator.create_job("alice", **arguments)

    assert await orchestrator.list_jobs("alice") == []


@pytest.mark.asyncio
async def test_prompt_error_reports_index(orchestrator):
    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.create_job("alice", "Sneakers", "test-image", ["ok", "ok", ""])

    assert exc_info.value.details["index"] == 2
