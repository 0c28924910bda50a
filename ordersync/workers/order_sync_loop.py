"""Order sync background process.

Builds the single :class:`OrderSyncScheduler` for this process and keeps it
running until SIGINT / SIGTERM, then stops it so in-flight runs are recorded
as aborted and their cursors are left untouched.

Run with ``python -m ordersync.workers.order_sync_loop``.
"""

import asyncio
import signal

from ordersync.config import settings
from ordersync.services.order_sync.scheduler import OrderSyncScheduler
from ordersync.utils.logger import logger


async def run_order_sync_loop() -> None:
    scheduler = OrderSyncScheduler()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    logger.info("=" * 60)
    logger.info(
        "Order sync loop starting (tz=%s, new orders every %s min %s:00-%s:00, status every %sh, cleanup at %s:00)",
        settings.SCHEDULER_TIMEZONE,
        settings.NEW_ORDERS_INTERVAL_MINUTES,
        settings.NEW_ORDERS_WINDOW_START_HOUR,
        settings.NEW_ORDERS_WINDOW_END_HOUR,
        settings.STATUS_SYNC_INTERVAL_HOURS,
        settings.CLEANUP_HOUR,
    )
    logger.info("=" * 60)

    await scheduler.start()
    try:
        await stop_event.wait()
    finally:
        await scheduler.stop()
        logger.info("Order sync loop stopped")


def main() -> None:
    asyncio.run(run_order_sync_loop())


if __name__ == "__main__":
    main()
