"""CLI entry point for the promptforge.cli module.

Enables execution via: python -m promptforge.cli <command> [OPTIONS]

Commands:
    grant-credits   Grant credits to a user account
    recover-jobs    Resume batch jobs interrupted by a crash or restart
"""

import sys

from promptforge.cli import grant_credits, recover_jobs

COMMANDS = {
    "grant-credits": grant_credits.main,
    "recover-jobs": recover_jobs.main,
}


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] not in COMMANDS:
        print(f"Usage: python -m promptforge.cli {{{','.join(COMMANDS)}}} [OPTIONS]", file=sys.stderr)
        return 2
    return COMMANDS[argv[0]](argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
