"""
Runtime knobs for live segmentation.

Defaults follow the Ultralytics YOLO11-seg postprocessing contract
(conf 0.25, IoU 0.45, mask logits thresholded at sigmoid 0.5, gray 114
letterbox padding).  Every field can be overridden from the environment via
``LiveConfig.from_env()``; CLI flags override the environment.

  SEGSCOPE_MODEL_URI        model artifact (path or URL)
  SEGSCOPE_BASE_URI         base that relative model URIs resolve against
  SEGSCOPE_CACHE_DIR        where fetched artifacts are kept
  SEGSCOPE_CONF             confidence threshold
  SEGSCOPE_IOU              overlap-suppression IoU threshold
  SEGSCOPE_MASK_THRESHOLD   mask probability threshold
  SEGSCOPE_MAX_DET          max detections per frame
  SEGSCOPE_AGNOSTIC_NMS     1/true → suppress across classes
  SEGSCOPE_FPS              display cadence for the frame scheduler
  SEGSCOPE_PROVIDERS        comma-separated onnxruntime execution providers
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

DEFAULT_MODEL_NAME = "yolo11n-seg"
DEFAULT_MODEL_URI = f"models/{DEFAULT_MODEL_NAME}.onnx"

_TRUE = {"1", "true", "yes", "on"}


def _default_cache_dir() -> Path:
    xdg = os.getenv("XDG_CACHE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / "segscope" / "models"


def _default_providers() -> Tuple[str, ...]:
    return ("CPUExecutionProvider",)


@dataclass(frozen=True)
class LiveConfig:
    model_uri: str = DEFAULT_MODEL_URI
    base_uri: Optional[str] = None
    cache_dir: Path = field(default_factory=_default_cache_dir)
    imgsz: int = 640
    conf: float = 0.25
    iou: float = 0.45
    mask_threshold: float = 0.5
    max_det: int = 300
    max_candidates: int = 30000
    agnostic: bool = False
    pad_value: int = 114
    mask_alpha: float = 0.5
    fps: float = 30.0
    providers: Tuple[str, ...] = field(default_factory=_default_providers)
    warmup_seed: int = 0
    chunk_size: int = 1024 * 1024

    def __post_init__(self) -> None:
        if not 0.0 <= self.conf <= 1.0:
            raise ValueError(f"conf must be in [0, 1], got {self.conf}")
        if not 0.0 <= self.iou <= 1.0:
            raise ValueError(f"iou must be in [0, 1], got {self.iou}")
        if not 0.0 < self.mask_threshold < 1.0:
            raise ValueError(f"mask_threshold must be in (0, 1), got {self.mask_threshold}")
        if self.max_det <= 0:
            raise ValueError("max_det must be positive")
        if self.imgsz <= 0 or self.imgsz % 32:
            raise ValueError("imgsz must be a positive multiple of 32")
        if not 0 <= self.pad_value <= 255:
            raise ValueError("pad_value must fit in uint8")
        if self.fps <= 0:
            raise ValueError("fps must be positive")

    @property
    def model_name(self) -> str:
        stem = Path(self.model_uri.rstrip("/")).name
        return stem.rsplit(".", 1)[0] if "." in stem else stem

    def with_overrides(self, **overrides: Any) -> "LiveConfig":
        """Return a copy with the non-``None`` overrides applied."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean) if clean else self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LiveConfig":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        known = {f.name for f in fields(cls)}

        def _get(name: str) -> Optional[str]:
            raw = env.get(f"SEGSCOPE_{name.upper()}")
            if raw is None:
                return None
            raw = raw.strip()
            return raw or None

        for name in ("model_uri", "base_uri"):
            raw = _get(name)
            if raw is not None:
                values[name] = raw
        raw = _get("cache_dir")
        if raw is not None:
            values["cache_dir"] = Path(raw).expanduser()
        for name in ("conf", "iou", "mask_threshold", "fps", "mask_alpha"):
            raw = _get(name)
            if raw is not None:
                try:
                    values[name] = float(raw)
                except ValueError as exc:
                    raise ValueError(f"SEGSCOPE_{name.upper()} must be a number, got {raw!r}") from exc
        for name in ("max_det", "imgsz"):
            raw = _get(name)
            if raw is not None:
                try:
                    values[name] = int(raw)
                except ValueError as exc:
                    raise ValueError(f"SEGSCOPE_{name.upper()} must be an integer, got {raw!r}") from exc
        raw = env.get("SEGSCOPE_AGNOSTIC_NMS")
        if raw is not None:
            values["agnostic"] = raw.strip().lower() in _TRUE
        raw = _get("providers")
        if raw is not None:
            values["providers"] = tuple(p.strip() for p in raw.split(",") if p.strip())

        return cls(**{k: v for k, v in values.items() if k in known})


__all__ = ["LiveConfig", "DEFAULT_MODEL_NAME", "DEFAULT_MODEL_URI"]
