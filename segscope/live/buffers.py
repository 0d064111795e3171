"""
Explicit accounting for tensor-shaped scratch buffers.

Every array that holds a letterboxed frame, a normalized model input, a
warm-up tensor or raw model outputs is registered here for exactly as long as
the cycle that produced it needs it.  ``live`` tells you how many are
outstanding; a cycle that leaks shows up as a growing count.

    pool = BufferPool()
    with pool.scope() as scope:
        canvas = scope.acquire((640, 640, 3), np.uint8, fill=114)
        ...
    assert pool.live == 0
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np


ShapeLike = Union[int, Sequence[int]]


class BufferPoolExhausted(RuntimeError):
    """Raised when acquiring would exceed the pool's capacity."""


class BufferPool:
    """
    Tracks live scratch buffers by identity.

    Parameters
    ----------
    capacity:
        Maximum number of simultaneously live buffers (``None`` = unbounded).
    name:
        Label used in log lines.
    """

    def __init__(self, capacity: Optional[int] = None, *, name: str = "tensors") -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.name = name
        self._live: Dict[int, np.ndarray] = {}
        self._peak = 0
        self._acquired_total = 0

    # ------------------------------------------------------------------ stats
    @property
    def live(self) -> int:
        return len(self._live)

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def acquired_total(self) -> int:
        return self._acquired_total

    def live_bytes(self) -> int:
        return int(sum(arr.nbytes for arr in self._live.values()))

    def owns(self, array: np.ndarray) -> bool:
        return id(array) in self._live

    # ------------------------------------------------------------------ core
    def _register(self, array: np.ndarray) -> np.ndarray:
        key = id(array)
        if key in self._live:
            return array
        if self.capacity is not None and len(self._live) >= self.capacity:
            raise BufferPoolExhausted(
                f"{self.name}: capacity {self.capacity} reached ({len(self._live)} live)"
            )
        self._live[key] = array
        self._acquired_total += 1
        self._peak = max(self._peak, len(self._live))
        return array

    def acquire(
        self,
        shape: ShapeLike,
        dtype: Any = np.float32,
        *,
        fill: Optional[float] = None,
    ) -> np.ndarray:
        """Allocate a buffer and register it as live."""
        if fill is None:
            array = np.empty(shape, dtype=dtype)
        else:
            array = np.full(shape, fill, dtype=dtype)
        return self._register(array)

    def adopt(self, array: Any) -> np.ndarray:
        """Register an array produced elsewhere (e.g. by the model)."""
        return self._register(np.asarray(array))

    def release(self, *arrays: Optional[np.ndarray]) -> int:
        """Release the given buffers; unknown or ``None`` entries are ignored."""
        released = 0
        for array in arrays:
            if array is None:
                continue
            if self._live.pop(id(array), None) is not None:
                released += 1
        return released

    def release_all(self) -> int:
        count = len(self._live)
        self._live.clear()
        return count

    @contextmanager
    def scope(self) -> Iterator["BufferScope"]:
        """Yield a scope whose buffers are released on every exit path."""
        scope = BufferScope(self)
        try:
            yield scope
        finally:
            scope.close()

    def __repr__(self) -> str:
        return f"BufferPool(name={self.name!r}, live={self.live}, peak={self._peak})"


class BufferScope:
    """Buffers acquired through a scope are released when the scope closes."""

    def __init__(self, pool: BufferPool) -> None:
        self.pool = pool
        self._owned: List[np.ndarray] = []
        self._closed = False

    def acquire(
        self,
        shape: ShapeLike,
        dtype: Any = np.float32,
        *,
        fill: Optional[float] = None,
    ) -> np.ndarray:
        if self._closed:
            raise RuntimeError("buffer scope already closed")
        array = self.pool.acquire(shape, dtype, fill=fill)
        self._owned.append(array)
        return array

    def adopt(self, array: Any) -> np.ndarray:
        if self._closed:
            raise RuntimeError("buffer scope already closed")
        owned = self.pool.adopt(array)
        self._owned.append(owned)
        return owned

    def detach(self, array: np.ndarray) -> np.ndarray:
        """Hand a buffer out of the scope; the caller becomes responsible for it."""
        self._owned = [a for a in self._owned if a is not array]
        return array

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.pool.release(*self._owned)
        self._owned.clear()

    @property
    def owned(self) -> Tuple[np.ndarray, ...]:
        return tuple(self._owned)


__all__ = ["BufferPool", "BufferScope", "BufferPoolExhausted"]
