# segscope/live/camera.py
"""
Frame sources for live segmentation.

Three origins feed the pipeline through one ``FrameSource`` protocol:

  • ImageSource   : a still image on disk (one frame, then exhausted),
  • UploadSource  : raw image bytes handed over by the UI (one frame),
  • VideoSource   : a camera index or a video file / stream URL (until it ends).

``SyntheticSource`` produces a deterministic moving pattern for headless runs.
All sources hand out BGR ``uint8`` frames; anything that cannot be opened or
decoded surfaces as ``SourceError``.
"""

from __future__ import annotations

import io
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Tuple, Union

import numpy as np

os.environ.setdefault("OPENCV_VIDEOIO_ENABLE_OBSENSOR", "0")
import cv2  # noqa: E402
from PIL import Image, UnidentifiedImageError  # noqa: E402

from segscope.logging_config import log_event  # noqa: E402

from ._types import NDArrayU8  # noqa: E402
from .errors import SourceError  # noqa: E402

LOGGER = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff", ".gif"}

SourceKind = str  # "image" | "video" | "upload"


def _log(event: str, **info: object) -> None:
    log_event(LOGGER, logging.INFO, event, **info)


@dataclass(frozen=True, eq=False)
class Frame:
    pixels: NDArrayU8
    source: SourceKind
    index: int = 0
    timestamp: float = field(default_factory=time.monotonic)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2]) if self.pixels.ndim == 3 else 1

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)"""
        return self.width, self.height


class FrameSource(Protocol):
    kind: SourceKind
    label: str

    @property
    def streaming(self) -> bool: ...
    def read(self) -> Optional[Frame]: ...
    def release(self) -> None: ...


def to_bgr(image: np.ndarray) -> NDArrayU8:
    """Normalize gray / BGRA / float images to contiguous 3-channel uint8 BGR."""
    arr = np.asarray(image)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 2:
        return cv2.cvtColor(np.ascontiguousarray(arr), cv2.COLOR_GRAY2BGR)
    if arr.ndim == 3 and arr.shape[2] == 1:
        return cv2.cvtColor(np.ascontiguousarray(arr[:, :, 0]), cv2.COLOR_GRAY2BGR)
    if arr.ndim == 3 and arr.shape[2] == 4:
        return cv2.cvtColor(np.ascontiguousarray(arr), cv2.COLOR_BGRA2BGR)
    if arr.ndim == 3 and arr.shape[2] == 3:
        return np.ascontiguousarray(arr)
    raise SourceError(f"unsupported image shape {arr.shape}")


class _StillSource:
    """Common behaviour for one-shot sources."""

    kind: SourceKind = "image"

    def __init__(self, pixels: NDArrayU8, label: str) -> None:
        self._pixels: Optional[NDArrayU8] = pixels
        self.label = label

    @property
    def streaming(self) -> bool:
        return False

    def read(self) -> Optional[Frame]:
        if self._pixels is None:
            return None
        pixels, self._pixels = self._pixels, None
        return Frame(pixels=pixels, source=self.kind)

    def release(self) -> None:
        self._pixels = None


class ImageSource(_StillSource):
    kind = "image"

    def __init__(self, path: Union[str, Path]) -> None:
        p = Path(path)
        if not p.is_file():
            raise SourceError(f"image not found: {p}", source=str(p))
        pixels = decode_image(p.read_bytes(), label=str(p))
        super().__init__(pixels, str(p))
        _log("live.source.image", path=p, width=pixels.shape[1], height=pixels.shape[0])


class UploadSource(_StillSource):
    kind = "upload"

    def __init__(self, data: bytes, *, name: str = "upload") -> None:
        if not data:
            raise SourceError("uploaded file is empty", source=name)
        pixels = decode_image(data, label=name)
        super().__init__(pixels, name)
        _log("live.source.upload", name=name, size=len(data))


def decode_image(data: bytes, *, label: str = "image") -> NDArrayU8:
    """
    Decode encoded image bytes to BGR.  OpenCV first; Pillow for formats the
    OpenCV build cannot read (GIF, some WebP/TIFF variants).
    """
    buf = np.frombuffer(data, dtype=np.uint8)
    decoded = cv2.imdecode(buf, cv2.IMREAD_UNCHANGED) if buf.size else None
    if decoded is not None:
        return to_bgr(decoded)
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgb = np.asarray(img.convert("RGB"))
    except (UnidentifiedImageError, OSError) as exc:
        raise SourceError(f"could not decode {label}: {exc}", source=label) from exc
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


class VideoSource:
    """Camera index or video file / stream URL read through ``cv2.VideoCapture``."""

    kind: SourceKind = "video"

    def __init__(
        self,
        source: Union[str, int],
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fps: Optional[float] = None,
    ) -> None:
        if isinstance(source, str) and source.strip().lstrip("+-").isdigit():
            source = int(source.strip())
        self.label = f"camera:{source}" if isinstance(source, int) else str(source)
        if isinstance(source, str) and "://" not in source and not Path(source).is_file():
            raise SourceError(f"video not found: {source}", source=self.label)
        self.cap = cv2.VideoCapture(source)
        if not self.cap.isOpened():
            self.cap.release()
            raise SourceError(
                f"could not open {self.label} (device busy or permission denied?)",
                source=self.label,
            )
        if width:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
        if height:
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if fps:
            self.cap.set(cv2.CAP_PROP_FPS, float(fps))
        self._index = 0
        self._released = False
        _log("live.source.video", source=self.label, width=width, height=height, fps=fps)

    @property
    def streaming(self) -> bool:
        return True

    def read(self) -> Optional[Frame]:
        if self._released:
            return None
        ok, frame = self.cap.read()
        if not ok or frame is None:
            return None
        out = Frame(pixels=to_bgr(frame), source=self.kind, index=self._index)
        self._index += 1
        return out

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.cap.release()


class SyntheticSource:
    """Deterministic moving gradient + square; stops after ``frames`` frames."""

    kind: SourceKind = "video"

    def __init__(self, size: Tuple[int, int] = (640, 480), *, frames: Optional[int] = None) -> None:
        self.width, self.height = int(size[0]), int(size[1])
        if self.width <= 0 or self.height <= 0:
            raise SourceError(f"invalid synthetic size {size}", source="synthetic")
        self.label = "synthetic"
        self.limit = frames
        self._index = 0
        self._released = False
        ramp = np.linspace(0, 255, self.width, dtype=np.float32)
        self._base = np.repeat(ramp[None, :], self.height, axis=0).astype(np.uint8)

    @property
    def streaming(self) -> bool:
        return True

    def read(self) -> Optional[Frame]:
        if self._released or (self.limit is not None and self._index >= self.limit):
            return None
        i = self._index
        img = np.stack(
            [self._base, np.roll(self._base, i * 4, axis=1), np.full_like(self._base, (i * 3) % 256)],
            axis=2,
        )
        side = max(8, min(self.width, self.height) // 4)
        x = (i * 7) % max(1, self.width - side)
        y = (i * 5) % max(1, self.height - side)
        cv2.rectangle(img, (x, y), (x + side, y + side), (255, 255, 255), thickness=-1)
        self._index += 1
        return Frame(pixels=img, source=self.kind, index=i)

    def release(self) -> None:
        self._released = True


def open_source(token: Union[str, int, Path]) -> FrameSource:
    """
    Pick a source from a CLI-style token: ``synthetic``, ``camera:N``, an
    integer camera index, an image path, or a video path / stream URL.
    """
    if isinstance(token, int):
        return VideoSource(token)
    text = str(token).strip()
    low = text.lower()
    if low.startswith("synthetic"):
        return SyntheticSource()
    if low.startswith("camera:"):
        return VideoSource(text.split(":", 1)[1] or "0")
    if text.lstrip("+-").isdigit():
        return VideoSource(int(text))
    if "://" not in text and Path(text).suffix.lower() in IMAGE_SUFFIXES:
        return ImageSource(text)
    return VideoSource(text)


__all__ = [
    "Frame",
    "FrameSource",
    "ImageSource",
    "UploadSource",
    "VideoSource",
    "SyntheticSource",
    "decode_image",
    "open_source",
    "to_bgr",
]
