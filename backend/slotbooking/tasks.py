"""
Operator tasks, meant to run from cron or a scheduler.

    python -m slotbooking.tasks expire-pending [--older-than MINUTES]
    python -m slotbooking.tasks retry-refunds [--max-attempts N]
"""

import argparse
import asyncio

from slotbooking.core.config import get_settings
from slotbooking.core.logging import get_logger, setup_logging
from slotbooking.db.session import SessionLocal, engine
from slotbooking.infrastructure.vipps_client import AccessTokenCache, VippsClient
from slotbooking.services.cancellation_service import retry_failed_refunds
from slotbooking.services.reservation_service import expire_pending_bookings

logger = get_logger(__name__)


async def run_expire_pending(older_than_minutes: int) -> int:
    async with SessionLocal() as db:
        return await expire_pending_bookings(db, older_than_minutes)


async def run_retry_refunds(max_attempts: int) -> tuple[int, int]:
    gateway = VippsClient.from_settings(get_settings(), AccessTokenCache())
    try:
        async with SessionLocal() as db:
            return await retry_failed_refunds(db, gateway, max_attempts)
    finally:
        await gateway.aclose()


async def _run(args: argparse.Namespace) -> None:
    try:
        if args.command == "expire-pending":
            expired = await run_expire_pending(args.older_than)
            logger.info("task_finished", task=args.command, expired=expired)
        else:
            succeeded, failed = await run_retry_refunds(args.max_attempts)
            logger.info("task_finished", task=args.command, succeeded=succeeded, failed=failed)
    finally:
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="slotbooking.tasks", description="Booking maintenance tasks")
    subparsers = parser.add_subparsers(dest="command", required=True)

    expire = subparsers.add_parser("expire-pending", help="Cancel stale pending payments and release capacity")
    expire.add_argument(
        "--older-than",
        type=int,
        default=settings.PENDING_PAYMENT_TTL_MINUTES,
        help="Age in minutes after which a pending payment is abandoned",
    )

    retry = subparsers.add_parser("retry-refunds", help="Re-attempt failed gateway refunds")
    retry.add_argument(
        "--max-attempts",
        type=int,
        default=settings.REFUND_MAX_ATTEMPTS,
        help="Skip refunds that already failed this many times",
    )
    return parser


def main(argv=None) -> None:  # pragma: no cover - CLI entry point
    args = build_parser().parse_args(argv)
    setup_logging()
    asyncio.run(_run(args))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
