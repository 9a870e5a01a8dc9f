"""Background refresh poller.

Calls ``SyncEngine.refresh()`` every poll interval (5 minutes by default) and
serves manual refresh requests through the same engine.  After a RateLimited
or ServiceUnavailable failure no upstream call is made until the engine's
backoff deadline (at least 1 minute) has passed; polls that fall inside the
window are skipped, and manual requests get ``RefreshBackoffError``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Callable

from glucolink.libreview.base import utc_now
from glucolink.sync.engine import RefreshResult, SyncEngine

logger = logging.getLogger("glucolink.sync.scheduler")

DEFAULT_POLL_INTERVAL = timedelta(minutes=5)


class RefreshBackoffError(RuntimeError):
    """A manual refresh was requested inside the throttling backoff window."""

    def __init__(self, retry_at: datetime) -> None:
        self.retry_at = retry_at
        super().__init__(f"Refresh blocked until {retry_at.isoformat()}")


class RefreshPoller:
    """Periodic and manual refresh trigger for one SyncEngine.

    Usage::

        poller = RefreshPoller(engine)
        poller.start()
        ...
        await poller.trigger()   # manual refresh
        await poller.stop()
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval: timedelta | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the poller.

        Args:
            engine:   Engine that performs every refresh.
            interval: Time between polls; the config's poll interval by default.
            clock:    Time source.
        """
        self._engine = engine
        self._interval = interval or engine.config.sync.poll_interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._last_poll_at: datetime | None = None

    @property
    def interval(self) -> timedelta:
        return self._interval

    @property
    def last_poll_at(self) -> datetime | None:
        return self._last_poll_at

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling in the background; no-op if already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="glucolink-poller")
        logger.info("Poller started (every %ss)", int(self._interval.total_seconds()))

    async def stop(self) -> None:
        """Stop polling.  A refresh already in flight runs to completion."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Poller stopped")

    def should_poll(self, now: datetime | None = None) -> bool:
        """Return True if a poll is due and no backoff is active."""
        now = now or self._clock()
        if self._engine.in_backoff(now):
            return False
        if self._last_poll_at is None:
            return True
        return now - self._last_poll_at >= self._interval

    def next_delay(self, now: datetime | None = None) -> float:
        """Seconds to sleep before the next poll, stretched to cover any backoff."""
        now = now or self._clock()
        delay = self._interval
        retry_at = self._engine.retry_not_before
        if retry_at is not None and retry_at - now > delay:
            delay = retry_at - now
        return max(delay.total_seconds(), 0.0)

    async def poll_once(self) -> RefreshResult | None:
        """Run a scheduled refresh unless the engine is backing off.

        Returns:
            The refresh result, or None when the poll was skipped.
        """
        now = self._clock()
        if self._engine.in_backoff(now):
            logger.info(
                "Skipping poll, backing off until %s",
                self._engine.retry_not_before.isoformat() if self._engine.retry_not_before else "?",
            )
            return None
        self._last_poll_at = now
        return await self._engine.refresh()

    async def trigger(self) -> RefreshResult:
        """Manual refresh through the same engine.

        Raises:
            RefreshBackoffError: Inside the throttling backoff window.
        """
        retry_at = self._engine.retry_not_before
        if retry_at is not None and self._engine.in_backoff():
            raise RefreshBackoffError(retry_at)
        logger.info("Manual refresh requested")
        return await self._engine.refresh()

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.next_delay())
