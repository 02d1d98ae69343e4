"""Timer coordination for the question in play.

A TimerCoordinator belongs to exactly one (session, question index). It
publishes timerUpdate from the time limit down to 0 at a fixed cadence and
then exactly one timeUp. Receivers drop ticks for any other index, so a
restarted or duplicated coordinator cannot corrupt their view; the
supervisor still makes sure at most one coordinator runs per session.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional, Tuple

from .bus import MessageBus
from .common import Channels, logger
from .events import TimerExpired, TimerTick


class TimerCoordinator:
    def __init__(
        self,
        bus: MessageBus,
        session_code: str,
        question_index: int,
        time_limit: int,
        interval: float = 1.0,
    ):
        self.bus = bus
        self.session_code = session_code
        self.question_index = question_index
        self.time_limit = max(0, int(time_limit))
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._expired = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.session_code, self.question_index)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        return self._expired

    def start(self) -> asyncio.Task:
        """Start counting down. Calling start() again returns the same task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"timer-{self.session_code}-{self.question_index}")
        return self._task

    def cancel(self) -> None:
        """Stop the countdown; nothing is published after this returns. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug(f"[timer] cancelled {self.key}")

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _publish(self, event) -> None:
        if self._cancelled:
            return
        try:
            await self.bus.publish(Channels.timer(self.session_code), event.name, event.to_data(self.session_code))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # a missed tick is harmless; keep counting
            logger.warning(f"[timer] publish failed for {self.key}: {e}")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        logger.debug(f"[timer] start {self.key} limit={self.time_limit}s")
        for step, remaining in enumerate(range(self.time_limit, -1, -1)):
            delay = started + step * self.interval - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            await self._publish(TimerTick(remaining=remaining, question_index=self.question_index))
        if not self._cancelled:
            await self._publish(TimerExpired(question_index=self.question_index))
            self._expired = True
            logger.debug(f"[timer] expired {self.key}")


class TimerSupervisor:
    """Keeps at most one running TimerCoordinator per session code."""

    def __init__(
        self,
        bus: MessageBus,
        interval: float = 1.0,
        factory: Callable[..., TimerCoordinator] = TimerCoordinator,
    ):
        self.bus = bus
        self.interval = interval
        self._factory = factory
        self._timers: Dict[str, TimerCoordinator] = {}

    def current(self, session_code: str) -> Optional[TimerCoordinator]:
        return self._timers.get(session_code)

    def start(self, session_code: str, question_index: int, time_limit: int) -> TimerCoordinator:
        existing = self._timers.get(session_code)
        if (existing is not None and existing.question_index == question_index
                and existing.running and not existing.cancelled):
            logger.debug(f"[timer] already scheduled {existing.key}, skipping")
            return existing
        if existing is not None:
            existing.cancel()
        timer = self._factory(self.bus, session_code, question_index, time_limit, interval=self.interval)
        self._timers[session_code] = timer
        timer.start()
        return timer

    def cancel(self, session_code: Optional[str] = None) -> None:
        codes = [session_code] if session_code is not None else list(self._timers)
        for code in codes:
            timer = self._timers.pop(code, None)
            if timer is not None:
                timer.cancel()
