from __future__ import annotations

from pathlib import Path

import pytest

from segscope.live.config import DEFAULT_MODEL_URI, LiveConfig


def test_defaults() -> None:
    cfg = LiveConfig()
    assert cfg.model_uri == DEFAULT_MODEL_URI
    assert cfg.model_name == "yolo11n-seg"
    assert (cfg.conf, cfg.iou, cfg.mask_threshold) == (0.25, 0.45, 0.5)
    assert cfg.max_det == 300
    assert cfg.pad_value == 114
    assert cfg.providers == ("CPUExecutionProvider",)


def test_from_env(tmp_path: Path) -> None:
    env = {
        "SEGSCOPE_MODEL_URI": "https://models.example.org/yolo11s-seg.onnx",
        "SEGSCOPE_CACHE_DIR": str(tmp_path),
        "SEGSCOPE_CONF": "0.4",
        "SEGSCOPE_IOU": " 0.6 ",
        "SEGSCOPE_MAX_DET": "50",
        "SEGSCOPE_AGNOSTIC_NMS": "yes",
        "SEGSCOPE_PROVIDERS": "CUDAExecutionProvider, CPUExecutionProvider",
        "SEGSCOPE_FPS": "",
    }
    cfg = LiveConfig.from_env(env)
    assert cfg.model_name == "yolo11s-seg"
    assert cfg.cache_dir == tmp_path
    assert cfg.conf == pytest.approx(0.4)
    assert cfg.iou == pytest.approx(0.6)
    assert cfg.max_det == 50
    assert cfg.agnostic is True
    assert cfg.providers == ("CUDAExecutionProvider", "CPUExecutionProvider")
    assert cfg.fps == 30.0


def test_from_env_rejects_bad_numbers() -> None:
    with pytest.raises(ValueError, match="SEGSCOPE_CONF"):
        LiveConfig.from_env({"SEGSCOPE_CONF": "high"})
    with pytest.raises(ValueError):
        LiveConfig.from_env({"SEGSCOPE_CONF": "1.5"})


@pytest.mark.parametrize(
    "overrides",
    [
        {"conf": -0.1},
        {"iou": 2.0},
        {"mask_threshold": 1.0},
        {"imgsz": 600},
        {"max_det": 0},
        {"fps": 0},
    ],
)
def test_validation(overrides) -> None:
    with pytest.raises(ValueError):
        LiveConfig(**overrides)


def test_with_overrides_ignores_none() -> None:
    cfg = LiveConfig()
    assert cfg.with_overrides(conf=None, iou=None) is cfg
    changed = cfg.with_overrides(conf=0.5, model_uri=None)
    assert changed.conf == 0.5
    assert changed.model_uri == cfg.model_uri
