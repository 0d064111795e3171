"""
Raw YOLO-seg outputs → detections in original-frame pixels.

Prediction tensor: ``(1, 4 + nc + nm, N)`` (ONNX export) or ``(1, N, 4 + nc + nm)``.
Each candidate carries ``cx, cy, w, h`` in model-input pixels, ``nc`` class
scores and ``nm`` mask coefficients.  Mask prototypes: ``(1, nm, mh, mw)`` for
channels-first graphs, ``(1, mh, mw, nm)`` for channels-last ones.

Steps: confidence filter → stable sort → greedy per-class suppression →
mask assembly (sigmoid of coeffs @ protos, cropped to the box) → undo the
letterbox and clamp to the frame.  Given identical inputs and thresholds the
kept set and its order are identical; ties on confidence keep the candidate
that appears first in the model output.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from segscope.logging_config import log_event

from ._types import BoolArray, Box
from .config import LiveConfig
from .errors import InferenceError
from .labels import COCO_NAMES
from .preprocess import LetterboxParams, RawOutputs

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Detection:
    class_id: int
    label: str
    confidence: float
    box: Box  # x1, y1, x2, y2 in frame pixels
    mask: Optional[BoolArray] = None  # aligned to pixel_box

    @property
    def pixel_box(self) -> Tuple[int, int, int, int]:
        """Integer pixel bounds covering ``box`` (what ``mask`` is aligned to)."""
        x1, y1, x2, y2 = self.box
        return int(math.floor(x1)), int(math.floor(y1)), int(math.ceil(x2)), int(math.ceil(y2))


def xywh2xyxy(xywh: np.ndarray) -> np.ndarray:
    out = np.empty_like(xywh, dtype=np.float32)
    half = xywh[..., 2:4] / 2.0
    out[..., 0:2] = xywh[..., 0:2] - half
    out[..., 2:4] = xywh[..., 0:2] + half
    return out


def box_iou(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    """IoU of one xyxy box against an ``(N, 4)`` array of xyxy boxes."""
    ix1 = np.maximum(box[0], others[:, 0])
    iy1 = np.maximum(box[1], others[:, 1])
    ix2 = np.minimum(box[2], others[:, 2])
    iy2 = np.minimum(box[3], others[:, 3])
    inter = np.clip(ix2 - ix1, 0, None) * np.clip(iy2 - iy1, 0, None)
    area = max(0.0, float(box[2] - box[0])) * max(0.0, float(box[3] - box[1]))
    areas = np.clip(others[:, 2] - others[:, 0], 0, None) * np.clip(others[:, 3] - others[:, 1], 0, None)
    union = area + areas - inter
    return np.where(union > 0, inter / np.maximum(union, 1e-9), 0.0)


def greedy_nms(
    boxes: np.ndarray,
    scores: np.ndarray,
    classes: np.ndarray,
    iou_threshold: float,
    *,
    agnostic: bool = False,
    max_det: int = 300,
) -> List[int]:
    """
    Greedy suppression over candidates.  Returns indices into the inputs,
    ordered by descending score (stable: equal scores keep input order).
    A candidate is dropped when its IoU with an already-kept candidate of
    the same class (any class if *agnostic*) exceeds *iou_threshold*.
    """
    if len(scores) == 0:
        return []
    order = np.argsort(-np.asarray(scores, dtype=np.float64), kind="stable")
    kept: List[int] = []
    for idx in order.tolist():
        if len(kept) >= max_det:
            break
        if kept:
            pool = np.asarray(kept)
            if not agnostic:
                pool = pool[classes[pool] == classes[idx]]
            if pool.size and bool(np.any(box_iou(boxes[idx], boxes[pool]) > iou_threshold)):
                continue
        kept.append(idx)
    return kept


def split_predictions(
    predictions: np.ndarray,
    mask_dim: int,
    num_classes: Optional[int] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Return ``(boxes_xywh (N,4), class_scores (N,nc), coeffs (N,nm))``.

    With *num_classes* the candidate axis is found by matching the row width
    ``4 + nc + nm``; without it the shorter axis is taken as the channel axis.
    """
    pred = np.asarray(predictions, dtype=np.float32)
    if pred.ndim == 3:
        if pred.shape[0] != 1:
            raise InferenceError(f"expected batch size 1, got prediction shape {pred.shape}")
        pred = pred[0]
    if pred.ndim != 2:
        raise InferenceError(f"expected (C, N) predictions, got shape {pred.shape}")
    if num_classes is not None:
        width = 4 + num_classes + mask_dim
        if pred.shape[0] == width and pred.shape[1] != width:
            pred = pred.T
        elif pred.shape[1] != width:
            raise InferenceError(f"prediction shape {pred.shape} does not match row width {width}")
    elif pred.shape[0] < pred.shape[1]:
        pred = pred.T
    nc = pred.shape[1] - 4 - mask_dim
    if nc <= 0:
        raise InferenceError(f"prediction width {pred.shape[1]} leaves no class scores (mask dim {mask_dim})")
    return pred[:, :4], pred[:, 4:4 + nc], pred[:, 4 + nc:]


def prototypes_chw(prototypes: np.ndarray, layout: str) -> np.ndarray:
    protos = np.asarray(prototypes, dtype=np.float32)
    if protos.ndim == 4:
        protos = protos[0]
    if layout == "nhwc":
        protos = protos.transpose(2, 0, 1)
    return protos


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -50.0, 50.0)))


def assemble_mask(
    coeffs: np.ndarray,
    protos: np.ndarray,
    model_box: np.ndarray,
    frame_box: Tuple[int, int, int, int],
    input_hw: Tuple[int, int],
    threshold: float,
) -> Optional[BoolArray]:
    """
    Combine one candidate's coefficients with the ``(nm, mh, mw)`` prototypes
    and return a boolean mask covering *frame_box* (integer xyxy).  *model_box*
    is the same region mapped into model-input pixels.
    """
    fx1, fy1, fx2, fy2 = frame_box
    bw, bh = fx2 - fx1, fy2 - fy1
    if bw <= 0 or bh <= 0:
        return None
    nm, mh, mw = protos.shape
    logits = (coeffs.reshape(1, nm) @ protos.reshape(nm, -1)).reshape(mh, mw)
    prob = _sigmoid(logits).astype(np.float32)
    ih, iw = input_hw
    up = cv2.resize(prob, (iw, ih), interpolation=cv2.INTER_LINEAR)
    mx1 = int(np.clip(math.floor(model_box[0]), 0, iw - 1))
    my1 = int(np.clip(math.floor(model_box[1]), 0, ih - 1))
    mx2 = int(np.clip(math.ceil(model_box[2]), mx1 + 1, iw))
    my2 = int(np.clip(math.ceil(model_box[3]), my1 + 1, ih))
    region = up[my1:my2, mx1:mx2]
    region = cv2.resize(region, (bw, bh), interpolation=cv2.INTER_LINEAR)
    return region > threshold


def decode(
    raw: RawOutputs,
    letterbox: Optional[LetterboxParams] = None,
    frame_size: Optional[Tuple[int, int]] = None,
    *,
    config: Optional[LiveConfig] = None,
    names: Optional[Mapping[int, str] | Sequence[str]] = None,
    num_classes: Optional[int] = None,
) -> Tuple[Detection, ...]:
    """
    Decode *raw* into detections in original-frame pixels.

    *letterbox* defaults to the parameters recorded by ``infer``; *frame_size*
    ``(width, height)`` defaults to the letterbox source size.  Pass
    *num_classes* when the candidate count may be smaller than the row width.
    """
    cfg = config or LiveConfig()
    params = letterbox or raw.letterbox
    width, height = frame_size or params.src_size
    label_for = _label_lookup(names)

    protos = prototypes_chw(raw.prototypes, raw.layout) if raw.prototypes is not None else None
    mask_dim = protos.shape[0] if protos is not None else 0
    boxes_xywh, class_scores, coeffs = split_predictions(raw.predictions, mask_dim, num_classes)

    confidences = class_scores.max(axis=1)
    class_ids = class_scores.argmax(axis=1)
    finite = np.isfinite(boxes_xywh).all(axis=1) & np.isfinite(confidences)
    candidates = np.nonzero(finite & (confidences >= cfg.conf))[0]
    if candidates.size == 0:
        return ()
    order = candidates[np.argsort(-confidences[candidates].astype(np.float64), kind="stable")]
    if order.size > cfg.max_candidates:
        order = order[: cfg.max_candidates]

    model_boxes = xywh2xyxy(boxes_xywh[order])
    scores = confidences[order]
    classes = class_ids[order]
    keep = greedy_nms(
        model_boxes,
        scores,
        classes,
        cfg.iou,
        agnostic=cfg.agnostic,
        max_det=cfg.max_det,
    )
    if not keep:
        return ()

    frame_boxes = params.to_frame(model_boxes[keep])
    frame_boxes[:, [0, 2]] = frame_boxes[:, [0, 2]].clip(0, width)
    frame_boxes[:, [1, 3]] = frame_boxes[:, [1, 3]].clip(0, height)
    input_hw = (params.dst_size[1], params.dst_size[0])

    detections: List[Detection] = []
    for row, idx in enumerate(keep):
        x1, y1, x2, y2 = (float(v) for v in frame_boxes[row])
        if x2 <= x1 or y2 <= y1:
            continue
        cls_id = int(classes[idx])
        det = Detection(
            class_id=cls_id,
            label=label_for(cls_id),
            confidence=float(scores[idx]),
            box=(x1, y1, x2, y2),
        )
        if protos is not None:
            mask = assemble_mask(
                coeffs[order[idx]],
                protos,
                params.to_model(np.asarray(det.pixel_box, dtype=np.float32)),
                det.pixel_box,
                input_hw,
                cfg.mask_threshold,
            )
            det = Detection(det.class_id, det.label, det.confidence, det.box, mask)
        detections.append(det)

    log_event(
        LOGGER,
        logging.DEBUG,
        "live.decode",
        candidates=int(candidates.size),
        kept=len(detections),
        suppressed=int(order.size - len(keep)),
    )
    return tuple(detections)


def _label_lookup(names: Optional[Mapping[int, str] | Sequence[str]]):
    table = COCO_NAMES if names is None else names

    def _lookup(cls_id: int) -> str:
        if isinstance(table, Mapping):
            return str(table.get(cls_id, cls_id))
        if 0 <= cls_id < len(table):
            return str(table[cls_id])
        return str(cls_id)

    return _lookup


__all__ = [
    "Detection",
    "assemble_mask",
    "box_iou",
    "decode",
    "greedy_nms",
    "prototypes_chw",
    "split_predictions",
    "xywh2xyxy",
]
