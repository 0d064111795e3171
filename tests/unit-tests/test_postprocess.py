from __future__ import annotations

from typing import Sequence

import numpy as np
import pytest

from conftest import NC, NM, PERSON_IN_640x480, PROTO_HW, Candidate, build_outputs
from segscope.live.buffers import BufferPool
from segscope.live.config import LiveConfig
from segscope.live.errors import InferenceError
from segscope.live.postprocess import box_iou, decode, greedy_nms, split_predictions
from segscope.live.preprocess import RawOutputs, compute_letterbox


def _raw(candidates: Sequence[Candidate], pool: BufferPool, *, frame=(640, 480), **kw) -> RawOutputs:
    params = compute_letterbox(frame, (640, 640))
    return RawOutputs(build_outputs(candidates, **kw), params, kw.get("layout", "nchw"), pool)


def test_person_box_lands_in_frame_pixels() -> None:
    pool = BufferPool()
    with _raw([PERSON_IN_640x480], pool) as raw:
        dets = decode(raw)
    assert pool.live == 0
    assert len(dets) == 1
    det = dets[0]
    assert det.label == "person"
    assert det.class_id == 0
    assert det.confidence == pytest.approx(0.9)
    for got, want in zip(det.box, (100, 100, 200, 200)):
        assert abs(got - want) <= 2
    assert det.mask is not None
    x1, y1, x2, y2 = det.pixel_box
    assert det.mask.shape == (y2 - y1, x2 - x1)
    assert det.mask.dtype == np.bool_
    assert det.mask.all()


def test_confidence_threshold_is_inclusive() -> None:
    pool = BufferPool()
    cands = [
        (100.0, 200.0, 40.0, 40.0, 2, 0.25),
        (400.0, 200.0, 40.0, 40.0, 2, 0.2499),
    ]
    with _raw(cands, pool) as raw:
        dets = decode(raw)
    assert [d.confidence for d in dets] == [pytest.approx(0.25)]
    assert dets[0].label == "car"


def test_no_candidates_gives_empty_tuple() -> None:
    pool = BufferPool()
    with _raw([], pool) as raw:
        assert decode(raw) == ()


def test_same_class_overlap_is_suppressed() -> None:
    pool = BufferPool()
    cands = [
        (150.0, 230.0, 100.0, 100.0, 0, 0.8),
        (155.0, 232.0, 100.0, 100.0, 0, 0.9),
        (150.0, 230.0, 100.0, 100.0, 16, 0.7),  # dog, same place
    ]
    with _raw(cands, pool) as raw:
        dets = decode(raw)
    assert [(d.label, round(d.confidence, 2)) for d in dets] == [("person", 0.9), ("dog", 0.7)]

    with _raw(cands, pool) as raw:
        agnostic = decode(raw, config=LiveConfig(agnostic=True))
    assert [d.label for d in agnostic] == ["person"]


def test_no_two_kept_boxes_of_a_class_overlap_beyond_threshold() -> None:
    rng = np.random.default_rng(7)
    cands = []
    for _ in range(120):
        cx, cy = rng.uniform(100, 540, size=2)
        w, h = rng.uniform(20, 120, size=2)
        cands.append((float(cx), float(cy), float(w), float(h), int(rng.integers(0, 3)), float(rng.uniform(0.3, 1.0))))
    pool = BufferPool()
    cfg = LiveConfig(iou=0.45)
    with _raw(cands, pool, frame=(640, 640)) as raw:
        dets = decode(raw, config=cfg)
    assert dets
    confs = [d.confidence for d in dets]
    assert confs == sorted(confs, reverse=True)
    for i, a in enumerate(dets):
        for b in dets[i + 1:]:
            if a.class_id != b.class_id:
                continue
            iou = box_iou(np.array(a.box), np.array([b.box]))[0]
            assert iou <= 0.45 + 1e-6


def test_equal_confidence_keeps_first_candidate() -> None:
    pool = BufferPool()
    cands = [
        (150.0, 230.0, 100.0, 100.0, 0, 0.6),  # first in the output
        (152.0, 230.0, 100.0, 100.0, 0, 0.6),
    ]
    with _raw(cands, pool) as raw:
        dets = decode(raw)
    assert len(dets) == 1
    assert dets[0].box[0] == pytest.approx(100.0, abs=1e-3)


def test_decode_is_deterministic() -> None:
    pool = BufferPool()
    cands = [
        (150.0, 230.0, 100.0, 100.0, 0, 0.6),
        (152.0, 230.0, 100.0, 100.0, 0, 0.6),
        (400.0, 300.0, 80.0, 60.0, 39, 0.55),
        (405.0, 298.0, 82.0, 60.0, 39, 0.55),
    ]
    with _raw(cands, pool) as raw:
        first = decode(raw)
    with _raw(cands, pool) as raw:
        second = decode(raw)
    assert [(d.class_id, d.confidence, d.box) for d in first] == [(d.class_id, d.confidence, d.box) for d in second]
    assert all(np.array_equal(a.mask, b.mask) for a, b in zip(first, second))


def test_boxes_are_clamped_to_the_frame() -> None:
    pool = BufferPool()
    with _raw([(20.0, 100.0, 100.0, 100.0, 0, 0.9)], pool) as raw:
        dets = decode(raw)
    x1, y1, x2, y2 = dets[0].box
    assert x1 == 0.0
    assert y1 == 0.0  # top of the box sits in the padding band
    assert x2 == pytest.approx(70.0)
    assert y2 == pytest.approx(70.0)
    assert dets[0].mask.shape == (70, 70)
    assert dets[0].mask.all()


def test_clamped_mask_stays_aligned_with_the_frame() -> None:
    pool = BufferPool()
    # model box y 30..130 reaches 50 px into the top padding band; the frame box is y 0..50
    outputs = build_outputs([(150.0, 80.0, 100.0, 100.0, 0, 0.9)])
    protos = outputs[1]
    protos[0, 0, :26] = 1.0  # positive above model y=104, i.e. frame y=24
    protos[0, 0, 26:] = -1.0
    raw = RawOutputs(outputs, compute_letterbox((640, 480), (640, 640)), "nchw", pool)
    with raw:
        (det,) = decode(raw)
    assert det.box == pytest.approx((100.0, 0.0, 200.0, 50.0))
    assert det.mask.shape == (50, 100)
    assert det.mask[:20].all()
    assert not det.mask[30:].any()
    rows = np.nonzero(det.mask.any(axis=1))[0]
    assert abs(int(rows[-1]) - 24) <= 2


def test_non_finite_candidates_are_dropped() -> None:
    pool = BufferPool()
    nan = float("nan")
    cands = [
        (nan, 230.0, 100.0, 100.0, 0, 0.95),
        (400.0, 230.0, float("inf"), 40.0, 2, 0.9),
        PERSON_IN_640x480,
    ]
    with _raw(cands, pool) as raw:
        dets = decode(raw)
    assert len(dets) == 1
    assert dets[0].confidence == pytest.approx(0.9)
    assert all(np.isfinite(dets[0].box))


def test_mask_is_cropped_to_its_box() -> None:
    pool = BufferPool()
    outputs = build_outputs([(300.0, 230.0, 100.0, 100.0, 0, 0.9)])
    protos = outputs[1]
    protos[0, 0, :, : PROTO_HW // 2] = 1.0
    protos[0, 0, :, PROTO_HW // 2:] = -1.0
    raw = RawOutputs(outputs, compute_letterbox((640, 480), (640, 640)), "nchw", pool)
    with raw:
        (det,) = decode(raw)
    assert det.mask.shape == (100, 100)
    # the proto map flips sign at model x=320, i.e. 70 px into this box
    assert det.mask[:, :60].all()
    assert not det.mask[:, 80:].any()


def test_channels_last_prototypes() -> None:
    pool = BufferPool()
    with _raw([PERSON_IN_640x480], pool, layout="nhwc") as raw:
        (det,) = decode(raw)
    assert det.mask is not None and det.mask.all()


def test_detection_only_model_has_no_masks() -> None:
    pool = BufferPool()
    with _raw([PERSON_IN_640x480], pool, nm=0) as raw:
        (det,) = decode(raw)
    assert det.mask is None


def test_max_det_caps_the_result() -> None:
    pool = BufferPool()
    cands = [(40.0 + 60.0 * i, 300.0, 30.0, 30.0, 0, 0.9 - 0.01 * i) for i in range(9)]
    with _raw(cands, pool, frame=(640, 640)) as raw:
        dets = decode(raw, config=LiveConfig(max_det=3))
    assert [round(d.confidence, 2) for d in dets] == [0.9, 0.89, 0.88]


def test_custom_names_and_explicit_class_count() -> None:
    pool = BufferPool()
    outputs = build_outputs([(320.0, 320.0, 50.0, 50.0, 1, 0.8)], nc=2, nm=0, total=3)
    raw = RawOutputs(outputs, compute_letterbox((640, 640), (640, 640)), "nchw", pool)
    with raw:
        (det,) = decode(raw, names={0: "egg", 1: "crack"}, num_classes=2)
    assert det.label == "crack"
    assert det.box == pytest.approx((295.0, 295.0, 345.0, 345.0))


def test_split_predictions_rejects_mismatched_width() -> None:
    with pytest.raises(InferenceError):
        split_predictions(np.zeros((1, 10, 3), np.float32), mask_dim=0, num_classes=80)
    with pytest.raises(InferenceError):
        split_predictions(np.zeros((2, 116, 300), np.float32), mask_dim=NM)
    boxes, scores, coeffs = split_predictions(np.zeros((1, 4 + NC + NM, 300), np.float32), mask_dim=NM)
    assert boxes.shape == (300, 4) and scores.shape == (300, NC) and coeffs.shape == (300, NM)


def test_greedy_nms_threshold_is_exclusive() -> None:
    boxes = np.array([[0, 0, 10, 10], [0, 0, 10, 4.5], [0, 0, 10, 9]], dtype=np.float32)
    scores = np.array([0.9, 0.8, 0.7])
    classes = np.zeros(3, dtype=np.int64)
    # IoU(0, 1) == 0.45 exactly; IoU(0, 2) == 0.9
    assert greedy_nms(boxes, scores, classes, 0.45) == [0, 1]
