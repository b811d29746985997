"""Background sweepers for expired refresh tokens and verification codes.

Each reaper owns one asyncio task that wakes on a fixed interval and issues a
single bulk delete of rows whose expiry is before the current instant. A
failed sweep is logged and simply retried on the next tick.
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

from profileauth.clock import Clock, SystemClock
from profileauth.logging import get_logger

if TYPE_CHECKING:
    from profileauth.storage.memory import MemoryStore
    from profileauth.storage.postgres import PostgresStore

logger = get_logger(__name__)

DEFAULT_TOKEN_INTERVAL_SECONDS = 24 * 60 * 60
DEFAULT_CODE_INTERVAL_SECONDS = 30 * 60

Sweep = Callable[[datetime], Union[int, Awaitable[int]]]
Sleep = Callable[[float], Awaitable[None]]


class Reaper:
    """Periodic bulk delete of expired rows."""

    def __init__(
        self,
        name: str,
        sweep: Sweep,
        *,
        interval_seconds: float,
        clock: Optional[Clock] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self.clock = clock or SystemClock()
        self._sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self) -> int:
        """Run one sweep and return how many rows it removed."""
        now = self.clock.now()
        try:
            removed = self.sweep(now)
            if inspect.isawaitable(removed):
                removed = await removed
        except Exception as exc:
            logger.error(
                "reaper_sweep_failed",
                reaper=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0
        removed = int(removed or 0)
        logger.info("reaper_sweep_completed", reaper=self.name, removed=removed)
        return removed

    async def start(self) -> None:
        if self._running:
            logger.warning("reaper_already_running", reaper=self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("reaper_started", reaper=self.name, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reaper_stopped", reaper=self.name)

    async def _run_loop(self) -> None:
        while self._running:
            await self.tick()
            await self._sleep(self.interval_seconds)


def token_reaper(
    store: "PostgresStore | MemoryStore",
    *,
    interval_seconds: float = DEFAULT_TOKEN_INTERVAL_SECONDS,
    clock: Optional[Clock] = None,
    sleep: Sleep = asyncio.sleep,
) -> Reaper:
    return Reaper(
        "refresh_tokens",
        store.delete_expired_refresh_tokens,
        interval_seconds=interval_seconds,
        clock=clock,
        sleep=sleep,
    )


def code_reaper(
    store: "PostgresStore | MemoryStore",
    *,
    interval_seconds: float = DEFAULT_CODE_INTERVAL_SECONDS,
    clock: Optional[Clock] = None,
    sleep: Sleep = asyncio.sleep,
) -> Reaper:
    return Reaper(
        "verification_codes",
        store.delete_expired_verification_codes,
        interval_seconds=interval_seconds,
        clock=clock,
        sleep=sleep,
    )


__all__ = ["Reaper", "code_reaper", "token_reaper"]
