from __future__ import annotations

from typing import List

import pytest

from segscope.live.scheduler import FrameScheduler


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_tick_runs_only_callbacks_pending_at_start() -> None:
    sched = FrameScheduler(fps=60)
    ran: List[str] = []

    def first() -> None:
        ran.append("first")
        sched.request(lambda: ran.append("chained"))

    sched.request(first)
    assert sched.tick() == 1
    assert ran == ["first"]
    assert sched.pending == 1
    sched.tick()
    assert ran == ["first", "chained"]
    assert sched.pending == 0


def test_cancel_pending_callback() -> None:
    sched = FrameScheduler()
    ran: List[int] = []
    handle = sched.request(lambda: ran.append(1))
    assert sched.is_pending(handle)
    assert sched.cancel(handle) is True
    assert sched.cancel(handle) is False
    assert sched.cancel(None) is False
    sched.tick()
    assert ran == []


def test_callback_can_cancel_a_later_one_in_the_same_tick() -> None:
    sched = FrameScheduler()
    ran: List[str] = []
    handles: List[int] = []
    handles.append(sched.request(lambda: sched.cancel(handles[1])))
    handles.append(sched.request(lambda: ran.append("late")))
    assert sched.tick() == 1
    assert ran == []


def test_run_paces_ticks_at_the_cadence() -> None:
    clock = _Clock()
    sched = FrameScheduler(fps=10, clock=clock, sleep=clock.sleep)
    count = {"n": 0}

    def again() -> None:
        count["n"] += 1
        if count["n"] < 5:
            sched.request(again)

    sched.request(again)
    ticks = sched.run()
    assert ticks == 5
    assert count["n"] == 5
    assert clock.now == pytest.approx(0.4)


def test_run_stops_on_predicate_and_max_ticks() -> None:
    sched = FrameScheduler(fps=1000, sleep=lambda s: None)

    def forever() -> None:
        sched.request(forever)

    sched.request(forever)
    assert sched.run(max_ticks=3) == 3
    assert sched.pending == 1
    assert sched.run(lambda: True) == 0


def test_rejects_non_positive_fps() -> None:
    with pytest.raises(ValueError):
        FrameScheduler(fps=0)
