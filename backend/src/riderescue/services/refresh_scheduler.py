"""Periodic fallback refresh of a provider's visible set.

The live change stream can drop events while the store is unreachable; this
loop re-runs the full refresh on a fixed interval so the projection converges
once the store is back. Failures are logged and the loop keeps going.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from riderescue.services.errors import TransientIOError

logger = logging.getLogger(__name__)


class RefreshScheduler:
    def __init__(
        self,
        refresh: Callable[[], Awaitable[object]],
        interval_seconds: float = 15.0,
        name: str = "refresh",
    ):
        self._refresh = refresh
        self.interval_seconds = interval_seconds
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> bool:
        """Run one refresh; True on success."""
        try:
            await self._refresh()
        except TransientIOError as e:
            logger.warning("%s: store unavailable, retrying in %.0fs: %s", self.name, self.interval_seconds, e)
            return False
        except Exception as e:
            logger.error("%s loop error: %s", self.name, e)
            return False
        return True

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
