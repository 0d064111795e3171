"""
Frame → model input → raw outputs.

Letterbox resize (aspect preserved, centered gray padding), BGR→RGB, scale to
[0, 1] and arrange in the model's native layout, then call ``execute``.  The
letterboxed canvas and the normalized tensor are pool buffers that live only
for the duration of the execute call; the model's outputs come back wrapped in
``RawOutputs``, which owns them until ``release()``.

The recorded ``LetterboxParams`` are what the postprocessor needs to map boxes
and masks back onto the original frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import TracebackType
from typing import Optional, Sequence, Tuple, Type

import cv2
import numpy as np

from segscope.logging_config import log_event

from ._types import NDArrayF32, NDArrayU8
from .buffers import BufferPool, BufferScope
from .camera import Frame
from .errors import InferenceError
from .model import ModelHandle

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LetterboxParams:
    scale: float
    pad_x: int  # left
    pad_y: int  # top
    src_size: Tuple[int, int]  # (width, height) of the original frame
    dst_size: Tuple[int, int]  # (width, height) of the model input

    @property
    def resized_size(self) -> Tuple[int, int]:
        w, h = self.src_size
        return int(round(w * self.scale)), int(round(h * self.scale))

    def to_model(self, boxes: np.ndarray) -> np.ndarray:
        """Map xyxy boxes from frame pixels to model-input pixels."""
        out = np.asarray(boxes, dtype=np.float32).copy()
        out[..., [0, 2]] = out[..., [0, 2]] * self.scale + self.pad_x
        out[..., [1, 3]] = out[..., [1, 3]] * self.scale + self.pad_y
        return out

    def to_frame(self, boxes: np.ndarray) -> np.ndarray:
        """Undo the letterbox for xyxy boxes and clamp to the frame."""
        out = np.asarray(boxes, dtype=np.float32).copy()
        w, h = self.src_size
        out[..., [0, 2]] = (out[..., [0, 2]] - self.pad_x) / self.scale
        out[..., [1, 3]] = (out[..., [1, 3]] - self.pad_y) / self.scale
        out[..., [0, 2]] = out[..., [0, 2]].clip(0, w)
        out[..., [1, 3]] = out[..., [1, 3]].clip(0, h)
        return out


def compute_letterbox(src_size: Tuple[int, int], dst_hw: Tuple[int, int]) -> LetterboxParams:
    w, h = int(src_size[0]), int(src_size[1])
    dh, dw = int(dst_hw[0]), int(dst_hw[1])
    if w <= 0 or h <= 0:
        raise ValueError(f"invalid frame size {src_size}")
    scale = min(dh / h, dw / w)
    new_w, new_h = int(round(w * scale)), int(round(h * scale))
    pad_x = int(round((dw - new_w) / 2 - 0.1))
    pad_y = int(round((dh - new_h) / 2 - 0.1))
    return LetterboxParams(scale=scale, pad_x=pad_x, pad_y=pad_y, src_size=(w, h), dst_size=(dw, dh))


def letterbox(
    image: NDArrayU8,
    dst_hw: Tuple[int, int],
    scope: BufferScope,
    *,
    pad_value: int = 114,
) -> Tuple[NDArrayU8, LetterboxParams]:
    """Resize *image* into a pool-owned ``(H, W, 3)`` canvas."""
    h, w = image.shape[:2]
    params = compute_letterbox((w, h), dst_hw)
    dh, dw = int(dst_hw[0]), int(dst_hw[1])
    canvas = scope.acquire((dh, dw, 3), np.uint8, fill=pad_value)
    new_w, new_h = params.resized_size
    if (new_w, new_h) == (w, h):
        resized = image
    else:
        resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
    canvas[params.pad_y:params.pad_y + new_h, params.pad_x:params.pad_x + new_w] = resized
    return canvas, params


def to_input_tensor(canvas: NDArrayU8, layout: str, scope: BufferScope) -> NDArrayF32:
    """BGR uint8 canvas → RGB float32 in [0, 1] with a batch axis."""
    h, w = canvas.shape[:2]
    rgb = canvas[..., ::-1]
    if layout == "nchw":
        tensor = scope.acquire((1, 3, h, w), np.float32)
        src = rgb.transpose(2, 0, 1)
    else:
        tensor = scope.acquire((1, h, w, 3), np.float32)
        src = rgb
    np.multiply(src, np.float32(1.0 / 255.0), out=tensor[0], dtype=np.float32)
    return tensor


class RawOutputs:
    """
    Model outputs for one frame, registered with the buffer pool until
    ``release()``.  Usable as a context manager.
    """

    def __init__(
        self,
        arrays: Sequence[np.ndarray],
        letterbox: LetterboxParams,
        layout: str,
        pool: BufferPool,
    ) -> None:
        self.pool = pool
        self.letterbox = letterbox
        self.layout = layout
        adopted = []
        try:
            for array in arrays:
                adopted.append(pool.adopt(array))
        except BaseException:
            pool.release(*adopted)
            raise
        self.arrays: Tuple[np.ndarray, ...] = tuple(adopted)
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def predictions(self) -> np.ndarray:
        return self.arrays[0]

    @property
    def prototypes(self) -> Optional[np.ndarray]:
        return self.arrays[1] if len(self.arrays) > 1 else None

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.pool.release(*self.arrays)

    def __len__(self) -> int:
        return len(self.arrays)

    def __enter__(self) -> "RawOutputs":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.release()


def prepare_input(
    handle: ModelHandle,
    frame: Frame,
    scope: BufferScope,
    *,
    pad_value: int = 114,
) -> Tuple[NDArrayF32, LetterboxParams]:
    canvas, params = letterbox(frame.pixels, handle.input_hw, scope, pad_value=pad_value)
    return to_input_tensor(canvas, handle.layout, scope), params


def infer(
    handle: ModelHandle,
    frame: Frame,
    pool: BufferPool,
    *,
    pad_value: int = 114,
) -> RawOutputs:
    """Letterbox, normalize and execute; scratch buffers die with the call."""
    with pool.scope() as scope:
        tensor, params = prepare_input(handle, frame, scope, pad_value=pad_value)
        try:
            outputs = handle.model.execute(tensor)
        except Exception as exc:
            log_event(
                LOGGER,
                logging.ERROR,
                "live.infer.error",
                shape=tuple(tensor.shape),
                error=type(exc).__name__,
                message=str(exc),
            )
            raise InferenceError(f"execute failed for input {tuple(tensor.shape)}: {exc}") from exc
    return RawOutputs(outputs, params, handle.layout, pool)


__all__ = [
    "LetterboxParams",
    "RawOutputs",
    "compute_letterbox",
    "infer",
    "letterbox",
    "prepare_input",
    "to_input_tensor",
]
