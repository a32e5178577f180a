"""CLI command for granting credits to an account (purchases, coupons, support).

Usage:
    python -m promptforge.cli.grant_credits --user-id USER --amount N [OPTIONS]

Examples:
    # Grant 100 credits for a completed purchase
    python -m promptforge.cli.grant_credits --user-id alice --amount 100 --reason "Purchase #1042"

    # Verbose logging
    python -m promptforge.cli.grant_credits --user-id alice --amount 5 -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from promptforge.core import timezone  # noqa: F401
from promptforge.core.config import Settings, configure_logging
from promptforge.core.database import setup_db_session
from promptforge.services.events import EventPublisher
from promptforge.services.exceptions import ServiceError
from promptforge.services.ledger import CreditLedger
from promptforge.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Grant credits to a user account")

    parser.add_argument("--user-id", required=True, help="Account to credit")
    parser.add_argument("--amount", type=int, required=True, help="Positive number of credits")
    parser.add_argument(
        "--reason",
        default="Admin grant",
        help='Description stored on the earned transaction (default: "Admin grant")',
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
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    ledger = CreditLedger(create_uow_factory(session_factory))
    events = EventPublisher()

    try:
        transaction = await ledger.earn(args.user_id, args.amount, args.reason)
        balance = await ledger.get_balance(args.user_id)

        events.publish(
            "credits_purchase",
            user_id=args.user_id,
            amount=args.amount,
            reason=args.reason,
            transaction_id=str(transaction.id),
        )
        await events.drain()

        print(f"Granted {args.amount} credits to {args.user_id}. New balance: {balance}")
        return 0

    except ServiceError as e:
        logger.error("cli.grant_failed", error=e.message, error_type=type(e).__name__)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main(argv: list[str] | None = None) -> int:
    """Synchronous entry point for CLI."""
    return asyncio.run(async_main(argv))


if __name__ == "__main__":
    raise SystemExit(main())
