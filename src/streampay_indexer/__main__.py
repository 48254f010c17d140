"""Command-line entry point.

Usage:
    streampay-indexer run
    streampay-indexer init-db
    streampay-indexer reset-cursor
    streampay-indexer wait 0xTXHASH [--timeout-ms N] [--poll-interval-ms N]
    streampay-indexer status
    streampay-indexer leaderboard {senders,recipients} [--limit N]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from streampay_indexer import runner
from streampay_indexer.config import get_settings
from streampay_indexer.gateway.wait import WaitOutcome
from streampay_indexer.storage.queries import DEFAULT_LEADERBOARD_LIMIT, LeaderboardKind

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_TIMEOUT = 2

_WAIT_EXIT_CODES = {
    WaitOutcome.FOUND: EXIT_OK,
    WaitOutcome.NOT_FOUND: EXIT_FAILURE,
    WaitOutcome.TIMEOUT: EXIT_TIMEOUT,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="streampay-indexer",
        description="Index a streaming-payments contract into a relational projection",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the indexer worker loop")
    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("reset-cursor", help="Delete the cursor so indexing restarts at START_BLOCK")
    sub.add_parser("status", help="Print cursor position and protocol metrics as JSON")

    wait = sub.add_parser("wait", help="Wait until a transaction's stream creation is indexed")
    wait.add_argument("tx_hash", help="Transaction hash")
    wait.add_argument("--timeout-ms", type=int, default=None, help="Overrides WAIT_TIMEOUT_MS")
    wait.add_argument(
        "--poll-interval-ms", type=int, default=None, help="Overrides WAIT_POLL_INTERVAL_MS"
    )

    board = sub.add_parser("leaderboard", help="Print top senders or recipients as JSON")
    board.add_argument("kind", choices=[k.value for k in LeaderboardKind])
    board.add_argument("--limit", type=int, default=DEFAULT_LEADERBOARD_LIMIT)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        settings.validate_requirements(command=args.command)
    except ValueError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", e)
        return EXIT_FAILURE

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())

    if args.command == "run":
        asyncio.run(runner.run_indexer(settings=settings))
        return EXIT_OK

    if args.command == "init-db":
        asyncio.run(runner.init_database(settings=settings))
        return EXIT_OK

    if args.command == "reset-cursor":
        deleted = asyncio.run(runner.reset_cursor(settings=settings))
        print(runner.to_json({"deleted": deleted}))
        return EXIT_OK

    if args.command == "status":
        print(runner.to_json(asyncio.run(runner.indexer_status(settings=settings))))
        return EXIT_OK

    if args.command == "wait":
        result = asyncio.run(
            runner.wait_for_transaction(
                settings=settings,
                tx_hash=args.tx_hash,
                timeout_ms=args.timeout_ms,
                poll_interval_ms=args.poll_interval_ms,
            )
        )
        print(runner.to_json(result.to_dict()))
        return _WAIT_EXIT_CODES[result.outcome]

    if args.command == "leaderboard":
        entries = asyncio.run(
            runner.leaderboard(
                settings=settings,
                kind=LeaderboardKind(args.kind),
                limit=args.limit,
            )
        )
        print(runner.to_json(entries))
        return EXIT_OK

    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
