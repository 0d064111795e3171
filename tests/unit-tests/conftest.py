# tests/unit-tests/conftest.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np
import pytest

NC = 80
NM = 32
PROTO_HW = 160
CANDIDATES = 256

# (cx, cy, w, h, class_id, score) in model-input pixels
Candidate = Tuple[float, float, float, float, int, float]

# A person at frame box [100, 100, 200, 200] in a 640x480 frame lands at
# [100, 180, 200, 280] once letterboxed into 640x640 (80 px top padding).
PERSON_IN_640x480: Candidate = (150.0, 230.0, 100.0, 100.0, 0, 0.9)


def build_outputs(
    candidates: Sequence[Candidate],
    *,
    nc: int = NC,
    nm: int = NM,
    total: int = CANDIDATES,
    layout: str = "nchw",
    mask_coeff: float = 4.0,
) -> List[np.ndarray]:
    """Raw YOLO-seg style outputs: predictions (1, 4+nc+nm, N) and prototypes."""
    total = max(total, len(candidates))
    pred = np.zeros((1, 4 + nc + nm, total), dtype=np.float32)
    for i, (cx, cy, w, h, cls_id, score) in enumerate(candidates):
        pred[0, 0:4, i] = (cx, cy, w, h)
        pred[0, 4 + cls_id, i] = score
        if nm:
            pred[0, 4 + nc, i] = mask_coeff
    if not nm:
        return [pred]
    protos = np.zeros((1, nm, PROTO_HW, PROTO_HW), dtype=np.float32)
    protos[0, 0] = 1.0
    if layout == "nhwc":
        protos = protos.transpose(0, 2, 3, 1).copy()
    return [pred, protos]


class FakeSegModel:
    """Stands in for an ONNX session: fixed outputs, records every call."""

    def __init__(
        self,
        candidates: Sequence[Candidate] = (PERSON_IN_640x480,),
        *,
        input_shape: Sequence[Any] = (1, 3, 640, 640),
        layout: str = "nchw",
        outputs: Optional[Callable[[np.ndarray], List[np.ndarray]]] = None,
    ) -> None:
        self.input_shape = tuple(input_shape)
        self.layout = layout
        self.candidates = list(candidates)
        self.calls: List[Tuple[int, ...]] = []
        self.inputs: List[np.ndarray] = []
        self.fail_next = 0
        self._outputs = outputs

    def execute(self, tensor: np.ndarray) -> List[np.ndarray]:
        self.calls.append(tuple(tensor.shape))
        self.inputs.append(tensor.copy())
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ValueError(f"unexpected input shape {tuple(tensor.shape)}")
        if self._outputs is not None:
            return self._outputs(tensor)
        return build_outputs(self.candidates, layout=self.layout)


@pytest.fixture(autouse=True)
def _segscope_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Quiet spinners, keep logs and the model cache inside the test's tmp dir."""
    monkeypatch.setenv("SEGSCOPE_NO_SPINNER", "1")
    monkeypatch.setenv("SEGSCOPE_LOG_FILE", str(tmp_path / "logs" / "segscope.log"))
    monkeypatch.setenv("SEGSCOPE_CACHE_DIR", str(tmp_path / "cache"))
    for name in ("SEGSCOPE_MODEL_URI", "SEGSCOPE_CONF", "SEGSCOPE_IOU", "SEGSCOPE_BASE_URI"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fake_model() -> FakeSegModel:
    return FakeSegModel()


@pytest.fixture()
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "models" / "yolo11n-seg.onnx"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x08\x07onnx-graph" * 4096)
    return path


@pytest.fixture()
def deserializer(fake_model: FakeSegModel) -> Callable[[bytes, Sequence[str]], FakeSegModel]:
    def _deserialize(data: bytes, providers: Sequence[str]) -> FakeSegModel:
        assert data
        return fake_model

    return _deserialize


@pytest.fixture()
def frame_640x480():
    from segscope.live.camera import Frame

    pixels = np.full((480, 640, 3), 40, dtype=np.uint8)
    pixels[100:200, 100:200] = (200, 180, 160)
    return Frame(pixels=pixels, source="image")


@pytest.fixture()
def handle(fake_model: FakeSegModel):
    from segscope.live.model import ModelHandle

    return ModelHandle(
        model=fake_model,
        name="yolo11n-seg",
        input_shape=(1, 640, 640, 3),
        layout="nchw",
        output_shapes=((1, 4 + NC + NM, CANDIDATES), (1, NM, PROTO_HW, PROTO_HW)),
        source="memory",
    )
