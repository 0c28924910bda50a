from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Time source used by the fetcher, the runs bookkeeping and the scheduler.

    Tests substitute a virtual clock whose ``sleep`` advances time instantly.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


system_clock = Clock()


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
