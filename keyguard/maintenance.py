"""
Keyguard maintenance commands, run from cron.

Usage:
    # Drop unblocked origin records idle for 30 days (default)
    python -m keyguard.maintenance purge-origins

    # Custom retention, verbose logging
    python -m keyguard.maintenance purge-origins --older-than-days 7 --verbose
"""

import argparse
import asyncio
from datetime import timedelta

from structlog import get_logger

from keyguard.db.repositories import SqlOriginRepository
from keyguard.db.session import close_engines, get_session
from keyguard.observability import setup_logging
from keyguard.services.abuse_guard import AbuseGuard

logger = get_logger(__name__)


async def purge_origins(guard: AbuseGuard, older_than_days: int) -> int:
    """Remove origin records that are unblocked and idle past the retention."""
    return await guard.purge_stale(timedelta(days=older_than_days))


async def _purge_with_database(older_than_days: int) -> int:
    try:
        async with get_session() as session:
            return await purge_origins(AbuseGuard(SqlOriginRepository(session)), older_than_days)
    finally:
        await close_engines()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyguard.maintenance",
        description="Keyguard maintenance commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    purge = commands.add_parser("purge-origins", help="Delete idle, unblocked origin records")
    purge.add_argument(
        "--older-than-days",
        type=int,
        default=30,
        help="Retention for idle origin records (default: 30)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else None, log_format="console")

    if args.older_than_days < 1:
        logger.error("invalid_retention", older_than_days=args.older_than_days)
        return 2

    purged = asyncio.run(_purge_with_database(args.older_than_days))
    logger.info("maintenance_complete", command=args.command, purged=purged)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
