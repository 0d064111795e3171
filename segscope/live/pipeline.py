# segscope/live/pipeline.py
"""
Orchestrator: source -> infer -> decode -> render -> present, one cycle per
scheduler tick.

States::

    IDLE --load--> LOADING --ok--> READY --show--> RUNNING --exhausted--> STOPPED
                          \\--fail--> ERROR (terminal)

A static source (image, upload) runs a single cycle and drops back to READY;
a streaming source (camera, video) chains its next cycle through the
scheduler until it runs dry.  ``show()`` on a new source cancels whatever
cycle the previous one still had pending before the new one starts, so only
one cycle ever writes to the surface.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from segscope.logging_config import log_event
from segscope.progress import format_percent

from .buffers import BufferPool
from .camera import Frame, FrameSource, UploadSource, open_source
from .config import LiveConfig
from .errors import LoadError, SourceError, StateError
from .model import Deserializer, ModelHandle, load_model
from .overlay import hud, render
from .postprocess import Detection, decode
from .preprocess import infer
from .scheduler import FrameScheduler
from .sinks import Surface

LOGGER = logging.getLogger(__name__)

Renderer = Callable[..., None]
SourceLike = Union[FrameSource, str, int, Path, bytes]

NOTICE_SECONDS = 3.0


def _log(event: str, **info: object) -> None:
    log_event(LOGGER, logging.INFO, event, **info)


class State(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class LoadingState:
    loading: bool = False
    progress: float = 0.0

    @property
    def label(self) -> str:
        return format_percent(self.progress)


class Orchestrator:
    """
    Owns the one model handle, the active frame source and the cycle chain.

    Parameters
    ----------
    surface:
        The output surface every cycle draws on and presents.
    renderer:
        ``renderer(surface, frame, detections, alpha=...)``; defaults to
        ``overlay.render``.
    on_notice:
        Called with a message for non-fatal problems (source errors).
    show_hud:
        Draw the FPS / model / source line after rendering.
    """

    def __init__(
        self,
        surface: Surface,
        *,
        config: Optional[LiveConfig] = None,
        scheduler: Optional[FrameScheduler] = None,
        pool: Optional[BufferPool] = None,
        renderer: Optional[Renderer] = None,
        on_notice: Optional[Callable[[str], None]] = None,
        deserialize: Optional[Deserializer] = None,
        names: Optional[Union[Mapping[int, str], Sequence[str]]] = None,
        show_hud: bool = False,
    ) -> None:
        self.surface = surface
        self.config = config or LiveConfig()
        self.scheduler = scheduler or FrameScheduler(self.config.fps)
        self.pool = pool if pool is not None else BufferPool()
        self.renderer: Renderer = renderer or render
        self.on_notice = on_notice
        self.names = names
        self.show_hud = bool(show_hud)
        self._deserialize = deserialize

        self.state = State.IDLE
        self.loading = LoadingState()
        self.handle: Optional[ModelHandle] = None
        self.source: Optional[FrameSource] = None
        self.notices: List[str] = []
        self.cycles = 0
        self.skipped_cycles = 0
        self.last_detection_count = 0
        self.fps_estimate = 0.0

        self._pending: Optional[int] = None
        self._generation = 0
        self._last_cycle_at: Optional[float] = None
        self._notice: Optional[str] = None
        self._notice_until = 0.0

    # ------------------------------------------------------------------ loading
    @property
    def ready(self) -> bool:
        return self.handle is not None and self.state in (State.READY, State.RUNNING, State.STOPPED)

    def loading_steps(self, uri: Optional[str] = None) -> Iterator[LoadingState]:
        """
        Start the one model load and return an iterator of ``LoadingState``
        snapshots (progress never moves backwards; the last one is 100%).
        """
        if self.state is not State.IDLE:
            raise StateError(f"model already requested (state {self.state.value}); no reload")
        self.state = State.LOADING
        self.loading = LoadingState(loading=True, progress=0.0)
        target = uri or self.config.model_uri
        return self._load(target)

    def _load(self, uri: str) -> Iterator[LoadingState]:
        job = load_model(uri, pool=self.pool, config=self.config, deserialize=self._deserialize)
        try:
            for fraction in job:
                self.loading = LoadingState(loading=True, progress=max(self.loading.progress, fraction))
                yield self.loading
            handle = job.result()
        except LoadError as exc:
            self.state = State.ERROR
            self.loading = LoadingState(loading=False, progress=self.loading.progress)
            _log("live.pipeline.load.error", uri=uri, error=str(exc))
            raise
        finally:
            if self.state is State.LOADING and not job.done:
                # abandoned mid-load; there is no way back to IDLE
                self.state = State.ERROR
                self.loading = LoadingState(loading=False, progress=self.loading.progress)
        self.handle = handle
        self.state = State.READY
        self.loading = LoadingState(loading=False, progress=1.0)
        _log("live.pipeline.ready", model=handle.name, input=handle.input_shape, layout=handle.layout)
        yield self.loading

    def load(
        self,
        uri: Optional[str] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> ModelHandle:
        for snapshot in self.loading_steps(uri):
            if on_progress is not None:
                on_progress(snapshot.progress)
        if self.handle is None:
            raise StateError("model load finished without a handle")
        return self.handle

    # ------------------------------------------------------------------ sources
    def show(self, source: SourceLike) -> bool:
        """
        Make *source* the active frame source.  Returns False when it could
        not be opened (the reason goes to ``on_notice``).
        """
        if not self.ready:
            raise StateError(f"cannot show a source while {self.state.value}")
        self._deactivate()

        try:
            src = self._open(source)
        except SourceError as exc:
            self._report(str(exc))
            self.state = State.READY
            return False

        self._generation += 1
        self.source = src
        self.state = State.RUNNING
        self._last_cycle_at = None
        _log("live.pipeline.start", source=src.label, kind=src.kind, streaming=src.streaming)
        self._schedule(self._generation)
        return True

    @staticmethod
    def _open(source: SourceLike) -> FrameSource:
        if isinstance(source, (bytes, bytearray)):
            return UploadSource(bytes(source))
        if isinstance(source, (str, int, Path)):
            return open_source(source)
        return source

    def stop(self) -> None:
        if not self.ready:
            raise StateError(f"nothing to stop while {self.state.value}")
        self._deactivate()
        self.state = State.STOPPED
        _log("live.pipeline.stop", reason="requested", cycles=self.cycles)

    def _deactivate(self) -> None:
        """Cancel the pending cycle, then release the active source."""
        if self._pending is not None:
            self.scheduler.cancel(self._pending)
            self._pending = None
        self._generation += 1
        src, self.source = self.source, None
        if src is not None:
            src.release()
            _log("live.pipeline.source.released", source=src.label)

    def _schedule(self, generation: int) -> None:
        self._pending = self.scheduler.request(lambda: self._cycle(generation))

    # ------------------------------------------------------------------ cycles
    def _cycle(self, generation: int) -> None:
        if generation != self._generation or self.state is not State.RUNNING:
            return
        self._pending = None
        src = self.source
        if src is None:
            return

        try:
            frame = src.read()
        except SourceError as exc:
            self._report(str(exc))
            self._deactivate()
            self.state = State.STOPPED
            return

        if frame is None:
            self._deactivate()
            self.state = State.STOPPED if src.streaming else State.READY
            _log("live.pipeline.source.exhausted", source=src.label, cycles=self.cycles)
            return

        try:
            self.process(frame)
        except StateError:
            raise
        except Exception as exc:
            # one bad frame must not end a running source
            self.skipped_cycles += 1
            log_event(
                LOGGER,
                logging.ERROR,
                "live.pipeline.cycle.skipped",
                source=src.label,
                index=frame.index,
                kind=type(exc).__name__,
                error=str(exc),
            )
        self.cycles += 1

        if src.streaming:
            self._schedule(generation)
        else:
            self._deactivate()
            self.state = State.READY

    def process(self, frame: Frame) -> Tuple[Detection, ...]:
        """Run one frame through infer, decode and render, then present."""
        if self.handle is None or not self.ready:
            raise StateError(f"no inference before the model is ready (state {self.state.value})")
        raw = infer(self.handle, frame, self.pool, pad_value=self.config.pad_value)
        try:
            detections = decode(raw, config=self.config, names=self.names)
        finally:
            raw.release()
        self.renderer(self.surface, frame, detections, alpha=self.config.mask_alpha)
        self._tick_fps()
        if self.show_hud and self.surface.canvas is not None:
            hud(
                self.surface.canvas,
                fps=self.fps_estimate,
                model=self.handle.name,
                source=self.source.label if self.source is not None else frame.source,
                notice=self._active_notice(),
            )
        self.surface.present()
        self.last_detection_count = len(detections)
        return detections

    def _tick_fps(self) -> None:
        now = time.monotonic()
        if self._last_cycle_at is not None:
            inst = 1.0 / max(1e-6, now - self._last_cycle_at)
            self.fps_estimate = 0.9 * self.fps_estimate + 0.1 * inst if self.fps_estimate > 0 else inst
        self._last_cycle_at = now

    # ------------------------------------------------------------------ notices
    def _report(self, message: str) -> None:
        log_event(LOGGER, logging.WARNING, "live.pipeline.notice", message=message)
        self.notices.append(message)
        self._notice = message
        self._notice_until = time.monotonic() + NOTICE_SECONDS
        if self.on_notice is not None:
            self.on_notice(message)

    def _active_notice(self) -> Optional[str]:
        if self._notice and time.monotonic() <= self._notice_until:
            return self._notice
        self._notice = None
        return None

    # ------------------------------------------------------------------ driving
    @property
    def has_pending_cycle(self) -> bool:
        return self.scheduler.is_pending(self._pending)

    def run(
        self,
        until: Optional[Callable[[], bool]] = None,
        *,
        max_ticks: Optional[int] = None,
    ) -> int:
        """Tick the scheduler until no cycle is pending (or *until* / *max_ticks*)."""
        return self.scheduler.run(until, max_ticks=max_ticks)

    def close(self) -> None:
        if self.source is not None or self._pending is not None:
            self._deactivate()
            if self.ready:
                self.state = State.STOPPED
        self.surface.close()
        _log("live.pipeline.end", cycles=self.cycles, skipped=self.skipped_cycles, live_buffers=self.pool.live)


__all__ = ["LoadingState", "Orchestrator", "State"]
