"""Clock synchronization against the exchange's server time.

Signed requests are rejected when their timestamp drifts outside the recv
window, so every client asks a shared :class:`ClockSynchronizer` for the
timestamp instead of reading the local clock directly.
"""
import asyncio
import time
from typing import Awaitable, Callable, Optional

from .logging_setup import logger

ServerTimeFetcher = Callable[[], Awaitable[int]]


def _local_ms() -> int:
    return int(time.time() * 1000)


class ClockSynchronizer:
    """Tracks ``offset = server_time - local_time`` in milliseconds.

    Args:
        fetch_server_time: coroutine returning server time in epoch ms
        ttl_seconds: how long a measured offset stays fresh
        local_clock: callable returning local epoch ms (injectable for tests)
    """

    def __init__(self, fetch_server_time: ServerTimeFetcher, *, ttl_seconds: float = 3600.0, local_clock: Callable[[], int] = _local_ms):
        self._fetch = fetch_server_time
        self.ttl_seconds = ttl_seconds
        self._local_clock = local_clock
        self.offset_ms: int = 0
        self.last_sync_ms: Optional[int] = None
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._warned = False
        self._force_resync = False

    @property
    def synchronized(self) -> bool:
        return self.last_sync_ms is not None

    def is_fresh(self) -> bool:
        if self.last_sync_ms is None or self._force_resync:
            return False
        return self._local_clock() - self.last_sync_ms < self.ttl_seconds * 1000

    async def sync(self) -> int:
        """Measure the offset now and return it.

        The midpoint of the round trip is used as the local reference.
        """
        async with self._lock:
            before = self._local_clock()
            server_ms = int(await self._fetch())
            after = self._local_clock()
            local_ms = (before + after) // 2
            self.offset_ms = server_ms - local_ms
            self.last_sync_ms = after
            self._warned = False
            self._force_resync = False
        logger.info(f"Clock synchronized | offset_ms={self.offset_ms} rtt_ms={after - before}")
        return self.offset_ms

    async def ensure_synced(self) -> None:
        """Sync if never synchronized or the offset is stale."""
        if not self.is_fresh():
            await self.sync()

    def invalidate(self) -> None:
        """Force the next :meth:`ensure_synced` to resynchronize."""
        self._force_resync = True

    def get_timestamp(self) -> int:
        """Current exchange time in ms, or raw local time before the first sync."""
        now = self._local_clock()
        if self.last_sync_ms is None:
            if not self._warned:
                logger.warning("Clock not synchronized | using local time for request signing")
                self._warned = True
            return now
        return now + self.offset_ms

    def start_background(self, interval_seconds: float) -> asyncio.Task:
        """Resync periodically without blocking callers."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(interval_seconds))
        return self._task

    async def _run(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.sync()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Clock sync failed | error={e}")
            await asyncio.sleep(interval_seconds)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
