# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Proactive token refresh scheduling.

One asyncio task per key sleeps until the refresh point and then runs the
refresh callback. Scheduling state lives only in memory and is rebuilt from
the key store at startup.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .errors import is_fail_closed_error
from .failure_logger import log_refresh_failure
from .utils.key_formatter import format_key_for_display

lib_logger = logging.getLogger("key_lifecycle")

RefreshCallback = Callable[[str], Awaitable[object]]


class RefreshScheduler:
    """
    Keeps at most one pending refresh timer per API key.

    A timer fires ``lookahead`` before the token expiry, or immediately if
    that moment has already passed. Failures inside the callback are logged
    and swallowed, since nothing awaits a proactive refresh.
    """

    def __init__(self, callback: RefreshCallback, lookahead: timedelta):
        self._callback = callback
        self._lookahead = lookahead
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running: Set[asyncio.Task] = set()

    def schedule(
        self, key: str, expiry: datetime, now: Optional[datetime] = None
    ) -> float:
        """
        Arm (or re-arm) the refresh timer for a key.

        Returns:
            Delay in seconds until the refresh fires.
        """
        self.cancel(key)

        now = now or datetime.now(timezone.utc)
        delay = max(0.0, (expiry - self._lookahead - now).total_seconds())

        task = asyncio.create_task(
            self._run(key, delay), name=f"refresh:{format_key_for_display(key)}"
        )
        self._tasks[key] = task

        refresh_at = now + timedelta(seconds=delay)
        lib_logger.debug(
            f"Scheduled token refresh for {format_key_for_display(key)} "
            f"at {refresh_at.isoformat()}"
        )
        return delay

    def cancel(self, key: str) -> bool:
        """Disarm the timer for a key. Returns whether one was pending."""
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        count = 0
        for key in list(self._tasks):
            if self.cancel(key):
                count += 1
        return count

    async def shutdown(self) -> int:
        """
        Disarm every timer and cancel refreshes that are already running.

        Returns:
            Number of timers and running refreshes cancelled.
        """
        count = self.cancel_all()

        running = list(self._running)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        return count + len(running)

    @property
    def in_flight(self) -> int:
        """Refresh callbacks currently running."""
        return len(self._running)

    def pending_keys(self) -> List[str]:
        return list(self._tasks)

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def _run(self, key: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        # Leave the timer table before refreshing so the callback can re-arm
        # this key without cancelling itself. Only shutdown() reaches it now.
        task = asyncio.current_task()
        if self._tasks.get(key) is task:
            del self._tasks[key]
        self._running.add(task)

        try:
            await self._callback(key)
        except Exception as e:
            lib_logger.error(
                f"Scheduled token refresh failed for {format_key_for_display(key)}: {e}"
            )
            log_refresh_failure(
                key, trigger="scheduled", error=e, deactivated=is_fail_closed_error(e)
            )
        finally:
            self._running.discard(task)


class PeriodicTask:
    """Runs a coroutine on a fixed cadence until stopped."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self._callback()
            except Exception as e:
                lib_logger.error(f"Periodic task '{self.name}' failed: {e}")
