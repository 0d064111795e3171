"""
BGR drawing for live segmentation:
  • instance masks (alpha blend, color keyed by class),
  • box outlines,
  • filled label tags "<label> NN.N%",
  • tiny HUD line (top-left).

``render`` paints onto a ``Surface`` canvas; it copies what it needs out of
the frame and the detections and keeps neither after returning.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence

import cv2
import numpy as np

from ._types import Color, NDArrayU8

if TYPE_CHECKING:  # pragma: no cover
    from .camera import Frame
    from .postprocess import Detection
    from .sinks import Surface


_INSTANCE_PALETTE: List[Color] = [
    (0, 197, 255), (255, 178, 29), (23, 204, 146), (255, 105, 97),
    (52, 148, 230), (222, 98, 98), (141, 218, 139), (255, 160, 122),
    (255, 215, 0), (255, 127, 80), (154, 205, 50), (106, 90, 205),
    (64, 224, 208), (255, 99, 195), (0, 255, 127), (255, 140, 0),
    (147, 112, 219), (72, 209, 204), (255, 69, 0), (46, 204, 113),
    (64, 156, 255), (220, 20, 60), (189, 255, 0), (0, 255, 204),
]

_FONT = cv2.FONT_HERSHEY_SIMPLEX


def class_color(cls_id: int, palette: Sequence[Color] = _INSTANCE_PALETTE) -> Color:
    """Fixed palette color for a class id."""
    if not palette:
        return (0, 197, 255)
    return palette[int(cls_id) % len(palette)]


def label_text(label: str, confidence: float) -> str:
    if not math.isfinite(confidence):
        return label
    return f"{label} {confidence * 100.0:.1f}%"


def _text_color(bg: Color) -> Color:
    b, g, r = bg
    return (0, 0, 0) if (0.114 * b + 0.587 * g + 0.299 * r) > 140 else (255, 255, 255)


def blend_mask(canvas: NDArrayU8, mask: np.ndarray, origin: tuple, color: Color, alpha: float) -> None:
    """Alpha-blend a boolean *mask* whose top-left corner sits at *origin* (x, y)."""
    H, W = canvas.shape[:2]
    x0, y0 = int(origin[0]), int(origin[1])
    mh, mw = mask.shape[:2]
    x1, y1 = max(0, x0), max(0, y0)
    x2, y2 = min(W, x0 + mw), min(H, y0 + mh)
    if x2 <= x1 or y2 <= y1:
        return
    sub = mask[y1 - y0:y2 - y0, x1 - x0:x2 - x0]
    if not sub.any():
        return
    region = canvas[y1:y2, x1:x2]
    tint = np.asarray(color, dtype=np.float32)
    px = region[sub].astype(np.float32)
    region[sub] = np.clip(px * (1.0 - alpha) + tint * alpha, 0, 255).astype(np.uint8)


def draw_box(canvas: NDArrayU8, box: Iterable[float], color: Color) -> None:
    x1, y1, x2, y2 = (int(round(v)) for v in box)
    H, W = canvas.shape[:2]
    thickness = max(1, int(0.5 + 0.002 * (H + W)))
    cv2.rectangle(canvas, (x1, y1), (max(x1, x2 - 1), max(y1, y2 - 1)), color, thickness)


def draw_tag(canvas: NDArrayU8, text: str, anchor: tuple, color: Color) -> None:
    """Filled tag above the box (inside it when there is no room above)."""
    H, W = canvas.shape[:2]
    scale = max(0.4, min(0.8, (H + W) / 2400.0))
    (tw, th), base = cv2.getTextSize(text, _FONT, scale, 1)
    x = int(min(max(0, anchor[0]), max(0, W - tw - 4)))
    y = int(anchor[1])
    top = y - th - base - 4
    if top < 0:
        top = max(0, y)
    cv2.rectangle(canvas, (x, top), (x + tw + 4, top + th + base + 4), color, thickness=-1)
    cv2.putText(canvas, text, (x + 2, top + th + 2), _FONT, scale, _text_color(color), 1, cv2.LINE_AA)


def render(
    surface: "Surface",
    frame: "Frame",
    detections: Sequence["Detection"],
    *,
    alpha: float = 0.5,
) -> None:
    """Draw *frame* then, per detection, its mask, box outline and label tag."""
    canvas = surface.draw_frame(frame)
    alpha = float(max(0.0, min(1.0, alpha)))
    for det in detections:
        color = class_color(det.class_id)
        if det.mask is not None:
            px1, py1, _, _ = det.pixel_box
            blend_mask(canvas, det.mask, (px1, py1), color, alpha)
    for det in detections:
        color = class_color(det.class_id)
        draw_box(canvas, det.box, color)
        draw_tag(canvas, label_text(det.label, det.confidence), (det.box[0], det.box[1]), color)
    surface.mark_drawn(len(detections))


def hud(canvas: NDArrayU8, *, fps: float, model: str, source: str, notice: Optional[str] = None) -> None:
    """Draw a tiny HUD in the top-left corner (optionally with a notice line)."""
    text = f"{fps:5.1f} FPS | {model} | {source}"
    cv2.putText(canvas, text, (8, 20), _FONT, 0.5, (255, 245, 200), 2)
    if notice:
        cv2.putText(canvas, notice, (8, 38), _FONT, 0.45, (255, 220, 200), 2)


__all__ = [
    "blend_mask",
    "class_color",
    "draw_box",
    "draw_tag",
    "hud",
    "label_text",
    "render",
]
