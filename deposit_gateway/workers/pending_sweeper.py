"""
Pending deposit sweeper.

Periodically refreshes deposits that are still pending after the
configured age, for the cases where neither the callback nor the webhook
reached this service. Runs as its own process; the API never needs it.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional

import structlog

from deposit_gateway.config import get_settings
from deposit_gateway.core.deposits import DepositService
from deposit_gateway.database.connection import close_db, get_session_factory
from deposit_gateway.integrations.fedapay_client import FedaPayClient
from deposit_gateway.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(service: DepositService) -> int:
    """
    Run one sweep in a fresh session.

    Returns:
        int: Deposits that reached a final status
    """
    session_factory = get_session_factory()
    async with session_factory() as db:
        return await service.sweep_stale_pending(db)


async def start_pending_sweeper(interval_seconds: Optional[int] = None, once: bool = False) -> None:
    """
    Start the sweeper loop.

    Args:
        interval_seconds: Seconds between sweeps (defaults to settings)
        once: Run a single sweep and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.sweeper_interval_seconds

    processor = FedaPayClient(settings)
    service = DepositService(settings, processor)

    logger.info(
        "pending_sweeper_starting",
        interval_seconds=interval,
        stale_after_minutes=settings.sweeper_stale_after_minutes,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("pending_sweeper_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_sweep(service)
            except Exception as e:
                # Keep sweeping; the next run retries the same deposits
                logger.error("pending_sweep_error", error=str(e), exc_info=True)

            if once:
                break

            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await processor.close()
        await close_db()
        logger.info("pending_sweeper_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Pending deposit sweeper")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_pending_sweeper(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
