"""
Concurrency Module
==================
Event-loop timer utilities shared by the queue, worker pool and allocator.

- PeriodicTask: runs a callback on a fixed interval until stopped
- Debouncer: coalesces bursts of triggers into one delayed call
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Union[Awaitable[Any], Any]]


class PeriodicTask:
    """
    Runs a sync or async callback every ``interval`` seconds on the running loop.

    Exceptions raised by the callback are logged and the loop keeps going,
    so a single bad tick never stops monitoring.

    Example:
        task = PeriodicTask("watchdog", 30.0, pool.check_heartbeats)
        task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop. Must be called with an event loop running."""
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=f"periodic:{self.name}")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Periodic task '{self.name}' tick failed")
            await asyncio.sleep(self.interval)


class Debouncer:
    """
    Timer-reset debounce around a single ``TimerHandle``.

    Every ``trigger()`` cancels the pending call and schedules a new one
    ``delay`` seconds out, so a burst of triggers produces one call.
    """

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> bool:
        """
        (Re)schedule the callback.

        Returns:
            False if no event loop is running, so nothing was scheduled
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)
        return True

    def cancel(self) -> bool:
        """Drop the pending call. Returns True if one was pending."""
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    def _fire(self) -> None:
        self._handle = None
        try:
            self._callback()
        except Exception:
            logger.exception("Debounced callback failed")
