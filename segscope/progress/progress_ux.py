# progress_ux.py: terminal UX helpers (Halo spinner for the model loader)
from __future__ import annotations

import itertools
import os
import sys
import threading
from types import TracebackType
from typing import Any, Callable, Dict, Optional, Protocol, Type

from colorama import Fore, Style
from colorama import init as colorama_init
from halo import Halo

colorama_init()

TextFn = Callable[[Dict[str, Any], str], str]

_PULSE = (Fore.CYAN, Fore.GREEN, Fore.MAGENTA, Fore.YELLOW, Fore.BLUE)


class Spinner(Protocol):
    def __enter__(self) -> "Spinner": ...
    def __exit__(self, exc_type: Optional[Type[BaseException]], exc: Optional[BaseException], tb: Optional[TracebackType]) -> None: ...
    def update(self, **kwargs: Any) -> "Spinner": ...
    @property
    def text(self) -> str: ...


def format_percent(fraction: float) -> str:
    """``0.4567`` → ``"45.67%"`` (clamped to [0, 100])."""
    pct = min(100.0, max(0.0, float(fraction) * 100.0))
    return f"{pct:.2f}%"


def should_enable_spinners(stream: Any | None = None) -> bool:
    """Spinners only draw on an interactive terminal outside CI."""
    if os.environ.get("SEGSCOPE_NO_SPINNER", "").strip().lower() in {"1", "true", "yes"}:
        return False
    if os.environ.get("CI") or os.environ.get("TERM") == "dumb":
        return False
    isatty = getattr(stream or sys.stderr, "isatty", None)
    return bool(callable(isatty) and isatty())


class NullSpinner:
    """Records state like the real spinner but draws nothing."""

    def __init__(self, text_fn: Optional[TextFn] = None, state: Optional[Dict[str, Any]] = None) -> None:
        self._text_fn = text_fn
        self._state: Dict[str, Any] = dict(state or {})

    def __enter__(self) -> "NullSpinner":
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]], exc: Optional[BaseException], tb: Optional[TracebackType]) -> None:
        return None

    def update(self, **kwargs: Any) -> "NullSpinner":
        self._state.update(kwargs)
        return self

    @property
    def text(self) -> str:
        return self._text_fn(self._state, "") if self._text_fn else ""


class DynamicSpinner(NullSpinner):
    """
    Halo spinner whose line is re-rendered from the shared state by a small
    daemon thread, so ``update()`` never touches the terminal itself.
    """

    def __init__(
        self,
        text_fn: TextFn,
        state: Optional[Dict[str, Any]] = None,
        *,
        interval: float = 0.1,
        stream: Any | None = None,
    ) -> None:
        super().__init__(text_fn, state)
        self._render = text_fn
        self._interval = interval
        self._stream = stream or sys.stderr
        self._halo = Halo(text="", spinner="dots", stream=self._stream)
        self._done = threading.Event()
        self._redraw: Optional[threading.Thread] = None

    def _paint(self, color: str) -> str:
        return self._render(self._state, color)

    def __enter__(self) -> "DynamicSpinner":
        pulse = itertools.cycle(_PULSE)
        self._done.clear()
        self._halo.start(self._paint(next(pulse)))

        def _loop() -> None:
            while not self._done.wait(self._interval):
                self._halo.text = self._paint(next(pulse))

        self._redraw = threading.Thread(target=_loop, name="segscope-spinner", daemon=True)
        self._redraw.start()
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]], exc: Optional[BaseException], tb: Optional[TracebackType]) -> None:
        self._done.set()
        if self._redraw is not None:
            self._redraw.join(timeout=1.0)
        final = self._paint("")
        if exc_type is None:
            self._halo.succeed(final)
        else:
            self._halo.fail(final)
        self._stream.flush()


def _spinner(text_fn: TextFn, state: Dict[str, Any], *, enabled: bool, stream: Any | None) -> Spinner:
    if enabled and should_enable_spinners(stream):
        return DynamicSpinner(text_fn, state, stream=stream)
    return NullSpinner(text_fn, state)


def simple_status(label: str, *, enabled: bool = True, stream: Any | None = None) -> Spinner:
    """Fixed one-line status (e.g. while probing video codecs)."""

    def text_fn(_state: Dict[str, Any], color: str) -> str:
        return f"{color}{label}{Style.RESET_ALL}" if color else label

    return _spinner(text_fn, {}, enabled=enabled, stream=stream)


def loader_spinner(
    label: str = "Loading model...",
    *,
    enabled: bool = True,
    stream: Any | None = None,
) -> Spinner:
    """
    Loader overlay: ``Loading model... NN.NN%``.  Feed it with
    ``spinner.update(progress=fraction)``.
    """

    def text_fn(state: Dict[str, Any], color: str) -> str:
        pct = format_percent(float(state.get("progress", 0.0)))
        if not color:
            return f"{label} {pct}"
        return f"{color}{Style.BRIGHT}{label}{Style.RESET_ALL} {Fore.MAGENTA}{pct}{Style.RESET_ALL}"

    return _spinner(text_fn, {"progress": 0.0}, enabled=enabled, stream=stream)
