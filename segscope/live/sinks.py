# segscope/live/sinks.py
"""
Output surface and sinks:
  • Surface      : the single canvas the active cycle draws on, presented to sinks,
  • DisplaySink  : OpenCV preview window (no-op when headless),
  • ImageSink    : writes the latest presented frame to an image file,
  • VideoSink    : MP4 writer with codec fallback (mp4v -> avc1 -> MJPG/AVI),
  • MultiSink    : broadcast to multiple sinks.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Protocol, Tuple, Union

import cv2
import numpy as np

from segscope.logging_config import log_event
from segscope.progress import simple_status

from ._types import NDArrayU8

if TYPE_CHECKING:  # pragma: no cover
    from .camera import Frame

LOGGER = logging.getLogger(__name__)


def _log(event: str, **info: object) -> None:
    log_event(LOGGER, logging.INFO, event, **info)


class Sink(Protocol):
    def write(self, frame_bgr: NDArrayU8, /) -> None: ...
    def close(self) -> None: ...


class DisplaySink:
    """
    Preview window through OpenCV HighGUI.

      • poll_key() → int: OpenCV keycode or -1
      • is_open() → bool: false once the user closed the window
    """

    def __init__(self, title: str = "segscope", headless: bool = False) -> None:
        self.title = title
        self.headless = bool(headless)
        self._window_ready = False
        self._last_key = -1
        _log("live.display.init", title=title, headless=self.headless)

    def write(self, frame_bgr: NDArrayU8) -> None:
        if self.headless:
            return
        try:
            if not self._window_ready:
                cv2.namedWindow(self.title, cv2.WINDOW_NORMAL)
                self._window_ready = True
            cv2.imshow(self.title, frame_bgr)
        except cv2.error as exc:
            # opencv-python-headless builds have no HighGUI
            self.headless = True
            _log("live.display.fallback", backend="none", reason=str(exc).strip().splitlines()[-1])

    def poll_key(self) -> int:
        if self.headless or not self._window_ready:
            return -1
        self._last_key = cv2.waitKey(1) & 0xFF
        return self._last_key

    def is_open(self) -> bool:
        if self.headless or not self._window_ready:
            return False
        try:
            return cv2.getWindowProperty(self.title, cv2.WND_PROP_VISIBLE) >= 1
        except cv2.error:
            return False

    def close(self) -> None:
        if self._window_ready:
            try:
                cv2.destroyWindow(self.title)
            except cv2.error:
                pass
            self._window_ready = False


class ImageSink:
    """Keeps the latest presented frame and writes it to *path* on close."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._latest: Optional[NDArrayU8] = None
        self.written: Optional[Path] = None

    def write(self, frame_bgr: NDArrayU8) -> None:
        if self._latest is None or self._latest.shape != frame_bgr.shape:
            self._latest = frame_bgr.copy()
        else:
            np.copyto(self._latest, frame_bgr)

    def close(self) -> None:
        if self._latest is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not cv2.imwrite(str(self.path), self._latest):
            raise OSError(f"could not write image {self.path}")
        self.written = self.path
        self._latest = None
        _log("live.sink.image.saved", path=self.path)


class VideoSink:
    """
    MP4 writer opened lazily on the first frame (the frame decides the size).
    Tries MP4 codecs, then MJPG into an ``.avi`` next to the requested path.
    """

    def __init__(self, path: Union[str, Path], fps: float = 30.0) -> None:
        self.path = Path(path)
        self.fps = float(max(1.0, fps))
        self.size: Optional[Tuple[int, int]] = None
        self.output_path: Path = self.path
        self.frames = 0
        self._writer: Optional[cv2.VideoWriter] = None

    def _open(self, size: Tuple[int, int]) -> cv2.VideoWriter:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.size = size
        with simple_status(f"Opening writer {size[0]}x{size[1]}@{self.fps:.0f}"):
            candidates = [(self.path, c) for c in ("mp4v", "avc1")]
            candidates.append((self.path.with_suffix(".avi"), "MJPG"))
            for target, codec in candidates:
                writer = cv2.VideoWriter(str(target), cv2.VideoWriter_fourcc(*codec), self.fps, size)
                if writer.isOpened():
                    self._writer = writer
                    self.output_path = target
                    _log("live.sink.video.opened", path=target, codec=codec, size=f"{size[0]}x{size[1]}")
                    return writer
                writer.release()
        raise OSError(f"no usable video codec for {self.path}")

    @property
    def opened(self) -> bool:
        return self._writer is not None and self._writer.isOpened()

    def write(self, frame_bgr: NDArrayU8) -> None:
        h, w = frame_bgr.shape[:2]
        writer = self._writer
        if writer is None:
            writer = self._open((w, h))
        elif self.size is not None and self.size != (w, h):
            frame_bgr = cv2.resize(frame_bgr, self.size, interpolation=cv2.INTER_LINEAR)
        writer.write(frame_bgr)
        self.frames += 1

    def close(self) -> None:
        if self._writer is not None:
            self._writer.release()
            self._writer = None
            _log("live.sink.video.closed", path=self.output_path, frames=self.frames)


class MultiSink:
    def __init__(self, *sinks: Optional[Sink]) -> None:
        self.sinks: List[Sink] = [s for s in sinks if s is not None]

    def write(self, frame_bgr: NDArrayU8) -> None:
        for s in self.sinks:
            s.write(frame_bgr)

    def close(self) -> None:
        for s in self.sinks:
            s.close()


class Surface:
    """
    The one output canvas.  The active cycle draws the frame and its
    detections into ``canvas`` and then ``present()`` hands it to the sinks.
    ``history`` keeps the source tag of every draw for inspection.
    """

    def __init__(self, *sinks: Optional[Sink], history: int = 64) -> None:
        self.sinks = MultiSink(*sinks)
        self.canvas: Optional[NDArrayU8] = None
        self.source: Optional[str] = None
        self.frame_index: Optional[int] = None
        self.presented = 0
        self.drawn_detections = 0
        self._history_limit = max(1, int(history))
        self.history: List[Tuple[str, int]] = []

    def draw_frame(self, frame: "Frame") -> NDArrayU8:
        """Copy *frame* into the canvas (reused while the size holds) and return it."""
        pixels = frame.pixels
        if self.canvas is None or self.canvas.shape != pixels.shape:
            self.canvas = np.empty_like(pixels)
        np.copyto(self.canvas, pixels)
        self.source = frame.source
        self.frame_index = frame.index
        self.history.append((frame.source, frame.index))
        if len(self.history) > self._history_limit:
            del self.history[0]
        return self.canvas

    def mark_drawn(self, count: int) -> None:
        self.drawn_detections = int(count)

    def present(self) -> None:
        if self.canvas is None:
            return
        self.sinks.write(self.canvas)
        self.presented += 1

    def close(self) -> None:
        self.sinks.close()


__all__ = [
    "DisplaySink",
    "ImageSink",
    "MultiSink",
    "Sink",
    "Surface",
    "VideoSink",
]
