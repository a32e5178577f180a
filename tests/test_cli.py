"""CLI command tests (grant-credits, recover-jobs).

Commands read their configuration from the environment, so the test database
URL is exported before each run.
"""

import pytest

from promptforge.cli import __main__ as cli_main
from promptforge.cli import grant_credits, recover_jobs
from promptforge.models.batch_job import BatchJobStatus


@pytest.fixture
def cli_env(monkeypatch, settings, session_factory):
    monkeypatch.setenv("DATABASE_URL", settings.database_url)
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("REPLICATE_API_TOKEN", "r8_test")


@pytest.mark.asyncio
async def test_grant_credits(cli_env, ledger):
    exit_code = await grant_credits.async_main(
        ["--user-id", "alice", "--amount", "25", "--reason", "Purchase #1042"]
    )

    assert exit_code == 0
    assert await ledger.get_balance("alice") == 25
    transactions = await ledger.list_transactions("alice")
    assert [tx.description for tx in transactions] == ["Purchase #1042"]


@pytest.mark.asyncio
async def test_grant_credits_rejects_non_positive_amount(cli_env, ledger):
    exit_code = await grant_credits.async_main(["--user-id", "alice", "--amount", "0"])

    assert exit_code == 1
    assert await ledger.get_balance("alice") == 0
    assert await ledger.list_transactions("alice") == []


@pytest.mark.asyncio
async def test_recover_jobs_without_interrupted_jobs(cli_env):
    assert await recover_jobs.async_main([]) == 0


@pytest.mark.asyncio
async def test_recover_jobs_finalizes_halted_job(cli_env, orchestrator, uow_factory):
    job = await orchestrator.create_job("alice", "Interrupted", "flux-schnell-replicate", ["one"])
    async with await uow_factory() as uow:
        stored = await uow.batch_jobs.get_for_update(job.id)
        stored.mark_processing()
        uow.session.add(stored)
    async with await uow_factory() as uow:
        await uow.batch_jobs.halt(job.id)

    exit_code = await recover_jobs.async_main(["--no-wait"])

    assert exit_code == 0
    assert (await orchestrator.get_job(job.id)).status == BatchJobStatus.CANCELLED


def test_module_entry_point_requires_command(capsys):
    assert cli_main.main([]) == 2
    assert cli_main.main(["unknown-command"]) == 2
    assert "grant-credits" in capsys.readouterr().err
