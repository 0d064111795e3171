"""
segscope progress

One progress UX: the Halo spinner in ``progress_ux.py``.  When the stream is
not a TTY (CI, pipes, tests) callers transparently get a ``NullSpinner`` that
keeps the state but draws nothing.

Exports
-------
- ProgressEngine / ProgressState  → unit-based progress reported as fractions
- loader_spinner(...)             → "Loading model... NN.NN%"
- simple_status(...)              → one-line status spinner
- format_percent(fraction)        → "NN.NN%"

Environment knobs:
  SEGSCOPE_NO_SPINNER   1 → never draw spinners
"""

from __future__ import annotations

from .engine import ProgressEngine, ProgressState
from .progress_ux import (
    NullSpinner,
    Spinner,
    format_percent,
    loader_spinner,
    should_enable_spinners,
    simple_status,
)

__all__ = [
    "ProgressEngine",
    "ProgressState",
    "NullSpinner",
    "Spinner",
    "format_percent",
    "loader_spinner",
    "should_enable_spinners",
    "simple_status",
]
