# segscope/live/scheduler.py
"""
Display-refresh scheduler.

A single-threaded stand-in for a host's "call me before the next repaint"
mechanism: callbacks are requested one at a time, a ``tick()`` runs the ones
that were pending when it started, and anything requested while a tick is
running waits for the next one.  A cycle therefore has to finish (and
explicitly chain its successor) before the next cycle runs.
"""
from __future__ import annotations

import itertools
import logging
import time
from collections import OrderedDict
from typing import Callable, Optional

from segscope.logging_config import log_event

LOGGER = logging.getLogger(__name__)

Callback = Callable[[], None]


class FrameScheduler:
    def __init__(
        self,
        fps: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")
        self.fps = float(fps)
        self.interval = 1.0 / self.fps
        self._clock = clock
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._pending: "OrderedDict[int, Callback]" = OrderedDict()
        self.ticks = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def request(self, callback: Callback) -> int:
        """Queue *callback* for the next tick and return a handle for ``cancel``."""
        handle = next(self._ids)
        self._pending[handle] = callback
        return handle

    def cancel(self, handle: Optional[int]) -> bool:
        if handle is None:
            return False
        return self._pending.pop(handle, None) is not None

    def is_pending(self, handle: Optional[int]) -> bool:
        return handle is not None and handle in self._pending

    def tick(self) -> int:
        """Run the callbacks pending at tick start; returns how many ran."""
        due = list(self._pending.keys())
        ran = 0
        for handle in due:
            callback = self._pending.pop(handle, None)
            if callback is None:  # cancelled by an earlier callback in this tick
                continue
            callback()
            ran += 1
        self.ticks += 1
        return ran

    def run(
        self,
        until: Optional[Callable[[], bool]] = None,
        *,
        max_ticks: Optional[int] = None,
    ) -> int:
        """
        Tick at the configured cadence while work is pending.  Stops early when
        *until()* turns true or after *max_ticks* ticks.  Returns ticks run.
        """
        count = 0
        next_at = self._clock()
        while self._pending:
            if until is not None and until():
                break
            if max_ticks is not None and count >= max_ticks:
                break
            delay = next_at - self._clock()
            if delay > 0:
                self._sleep(delay)
            self.tick()
            count += 1
            next_at = max(next_at + self.interval, self._clock())
        log_event(LOGGER, logging.DEBUG, "live.scheduler.idle", ticks=count, pending=self.pending)
        return count


__all__ = ["FrameScheduler"]
