"""Cooperative timer scheduling driven by an injectable monotonic clock."""
from __future__ import annotations

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from loadwarden.config import SchedulerConfig

logger = logging.getLogger(__name__)

Task = Callable[[], None]
Clock = Callable[[], float]


@dataclass(slots=True)
class ScheduledTask:
    """Represents a periodic task with its cadence."""

    name: str
    interval_seconds: float
    task: Task


@dataclass(order=True, slots=True)
class _Timer:
    due: float
    sequence: int
    handle: int = field(compare=False)
    callback: Task = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class Scheduler:
    """Single-threaded timer queue.

    Nothing runs on its own: :meth:`run_due` fires every timer whose due time
    has passed according to ``clock``.  Tests pass a fake clock and call
    :meth:`run_due` after advancing it; :meth:`run_forever` drives the queue
    with ``time.sleep`` between ticks.
    """

    def __init__(self, config: Optional[SchedulerConfig] = None, clock: Optional[Clock] = None) -> None:
        self._config = config or SchedulerConfig()
        self._clock: Clock = clock or time.monotonic
        self._queue: List[_Timer] = []
        self._timers: Dict[int, _Timer] = {}
        self._handles = itertools.count(1)
        self._sequence = itertools.count()
        self._stopped = False

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Task) -> int:
        """Run ``callback`` after ``delay`` seconds; returns a cancel handle."""

        handle = next(self._handles)
        timer = _Timer(self._clock() + max(0.0, delay), next(self._sequence), handle, callback)
        heapq.heappush(self._queue, timer)
        self._timers[handle] = timer
        return handle

    def cancel(self, handle: Optional[int]) -> bool:
        if handle is None:
            return False
        timer = self._timers.pop(handle, None)
        if timer is None:
            return False
        timer.cancelled = True
        return True

    def pending(self) -> int:
        return len(self._timers)

    def next_due(self) -> Optional[float]:
        self._drop_cancelled()
        return self._queue[0].due if self._queue else None

    def run_due(self) -> int:
        """Fire every timer that is due. Returns how many ran.

        Timers scheduled by the callbacks themselves wait for the next call,
        even with a zero delay.
        """

        fired = 0
        now = self._clock()
        barrier = next(self._sequence)
        while True:
            self._drop_cancelled()
            if not self._queue or self._queue[0].due > now or self._queue[0].sequence > barrier:
                break
            timer = heapq.heappop(self._queue)
            self._timers.pop(timer.handle, None)
            timer.callback()
            fired += 1
        return fired

    def add_task(self, scheduled_task: ScheduledTask) -> int:
        """Register a periodic task. Returns the handle of its next run."""

        def _run() -> None:
            try:
                scheduled_task.task()
            finally:
                if not self._stopped:
                    self.add_task(scheduled_task)

        return self.call_later(scheduled_task.interval_seconds, _run)

    def run_forever(self, stop: Optional[Callable[[], bool]] = None) -> None:
        """Drive the queue until ``stop()`` returns true or :meth:`stop` is called."""

        tick = self._config.tick_interval.total_seconds()
        self._stopped = False
        while not self._stopped and not (stop and stop()):
            self.run_due()
            time.sleep(tick)

    def stop(self) -> None:
        self._stopped = True

    def _drop_cancelled(self) -> None:
        while self._queue and self._queue[0].cancelled:
            heapq.heappop(self._queue)


__all__ = ["Clock", "ScheduledTask", "Scheduler", "Task"]
