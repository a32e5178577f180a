"""CLI command for resuming batch jobs interrupted by a crash or restart.

Resolves items left in reserving/dispatching (commit, refund or requeue), then
runs the resumed jobs to completion in this process.

Items whose claim lease is still running are left to the process holding them,
so it is safe to run next to live API processes.

Usage:
    python -m promptforge.cli.recover_jobs [OPTIONS]

Examples:
    # Resolve interrupted items and finish the resumed jobs
    python -m promptforge.cli.recover_jobs

    # Resolve interrupted items only; resumed jobs stay processing
    python -m promptforge.cli.recover_jobs --no-wait
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from promptforge.core import timezone  # noqa: F401
from promptforge.core.config import Settings, configure_logging
from promptforge.core.database import setup_db_session
from promptforge.services.batch.orchestrator import BatchJobOrchestrator
from promptforge.services.dispatch.adapter import build_default_adapter
from promptforge.services.events import EventPublisher
from promptforge.services.exceptions import InfrastructureError
from promptforge.services.ledger import CreditLedger
from promptforge.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Resume batch jobs interrupted by a crash or restart")

    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Only resolve interrupted items; do not run resumed jobs to completion",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (some jobs could not be recovered)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    events = EventPublisher()
    orchestrator = BatchJobOrchestrator(
        uow_factory,
        CreditLedger(uow_factory),
        build_default_adapter(settings),
        events,
        settings,
    )

    try:
        result = await orchestrator.recover_interrupted_jobs()
        if args.no_wait:
            await orchestrator.shutdown()
        else:
            await orchestrator.wait_for_all()

        print("\n" + "=" * 60)
        print("Batch Job Recovery Summary")
        print("=" * 60)
        print(f"Processing jobs found: {result.jobs_found}")
        print(f"Jobs resumed: {result.jobs_resumed}")
        print(f"Jobs finalized during recovery: {result.jobs_finalized}")
        print(f"Items requeued: {result.items_requeued}")
        print(f"Items finished: {result.items_finished}")
        print(f"Items left to live workers: {result.items_leased}")
        if result.errors:
            print(f"\nErrors encountered: {len(result.errors)}")
            for error in result.errors[:5]:
                print(f"  - {error}")
        print("=" * 60 + "\n")

        return 2 if result.errors else 0

    except InfrastructureError as e:
        logger.error("cli.recovery_failed", error=e.message)
        print(f"\nError: {e.message}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRecovery interrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    finally:
        await orchestrator.shutdown()
        await events.drain()
        await session_factory.kw["bind"].dispose()


def main(argv: list[str] | None = None) -> int:
    """Synchronous entry point for CLI."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    raise SystemExit(main())
