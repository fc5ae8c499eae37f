from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[bool]]
Sleep = Callable[[float], Awaitable[None]]


class MeteringClock:
    """
    Drives one session's ticks on the running event loop.

    The loop is strictly sequential: sleep, run the tick callback, and only
    then sleep again, so a slow store never causes ticks to stack. The
    callback returns ``False`` to end metering.

    ``stop()`` cancels a pending sleep immediately. If a tick is in flight it
    is allowed to settle first and no further tick is started.
    """

    def __init__(
        self,
        on_tick: TickCallback,
        interval_seconds: float,
        *,
        name: str = "metering-clock",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._on_tick = on_tick
        self._interval = interval_seconds
        self._name = name
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._stopping = False
        self._ticking = False
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError(f"{self._name} already started")
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self._name)

    def request_stop(self) -> None:
        """Stop scheduling ticks without waiting; an in-flight tick still settles."""
        self._stopping = True
        task = self._task
        if task is not None and not task.done() and not self._ticking:
            task.cancel()

    async def stop(self) -> None:
        self.request_stop()
        if self._task is asyncio.current_task():
            # called from inside a tick; the loop exits once the tick returns
            return
        await self.wait()

    async def wait(self) -> None:
        """Wait until the clock has stopped on its own or been stopped."""
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            # shield: cancelling the waiter must not cancel an in-flight tick
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def _run(self) -> None:
        while not self._stopping:
            await self._sleep(self._interval)
            if self._stopping:
                break
            self._ticking = True
            try:
                keep_going = await self._on_tick()
            except Exception:
                logger.exception("%s: tick failed, metering stopped", self._name)
                keep_going = False
            finally:
                self._ticking = False
            self.ticks += 1
            if not keep_going:
                break
        self._stopping = True
