from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

Listener = Callable[[float], None]


@dataclass
class ProgressState:
    """Byte counters for one artifact transfer."""

    total_units: float = 1.0
    done_units: float = 0.0
    current_item: Optional[str] = None
    started_at: float = field(default_factory=time.time)

    @property
    def fraction(self) -> float:
        if self.total_units <= 0:
            return 0.0
        return min(1.0, max(0.0, self.done_units / self.total_units))


class ProgressEngine:
    """
    Turns byte counts into a fraction in [0, 1] for the model loader.

    The reported fraction never moves backwards: raising the total mid-way
    (e.g. once Content-Length is known) holds the last value until the done
    units catch up.
    """

    def __init__(self) -> None:
        self.state = ProgressState()
        self._subscribers: List[Listener] = []
        self._reported = 0.0

    @property
    def fraction(self) -> float:
        return self._reported

    def on_update(self, listener: Listener) -> Callable[[], None]:
        """Subscribe *listener*; the returned callable unsubscribes it."""
        self._subscribers.append(listener)

        def _unsubscribe() -> None:
            if listener in self._subscribers:
                self._subscribers.remove(listener)

        return _unsubscribe

    def set_total(self, total_units: float) -> None:
        self.state.total_units = max(0.0, float(total_units))
        self._notify()

    def add(self, units: float, *, current_item: Optional[str] = None) -> None:
        self.state.done_units += float(units)
        if current_item is not None:
            self.state.current_item = current_item
        self._notify()

    def set_current(self, label: Optional[str]) -> None:
        self.state.current_item = label

    def finish(self) -> None:
        if self.state.done_units < self.state.total_units:
            self.state.done_units = self.state.total_units
        self._notify()

    def _notify(self) -> None:
        value = max(self._reported, self.state.fraction)
        if value == self._reported and self._reported > 0.0:
            return
        self._reported = value
        for listener in tuple(self._subscribers):
            listener(value)
