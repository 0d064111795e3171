"""
segscope live segmentation package.

Building blocks to:
  - load a YOLO11-seg ONNX model with progress and a warm-up run,
  - read frames from an image, an upload, a video file or a camera,
  - letterbox, execute and decode detections + instance masks,
  - draw overlays onto one output surface and hand it to sinks,
  - drive it all one cycle per display tick through the Orchestrator.

The CLI entrypoint lives in segscope.live.cli.
"""

from __future__ import annotations

from .buffers import BufferPool, BufferPoolExhausted
from .camera import Frame, FrameSource, ImageSource, SyntheticSource, UploadSource, VideoSource, open_source
from .config import LiveConfig
from .errors import InferenceError, LoadError, SegscopeError, SourceError, StateError
from .model import ModelHandle, load, load_model
from .overlay import hud, render
from .pipeline import LoadingState, Orchestrator, State
from .postprocess import Detection, decode
from .preprocess import LetterboxParams, RawOutputs, infer
from .scheduler import FrameScheduler
from .sinks import DisplaySink, ImageSink, MultiSink, Surface, VideoSink

__all__ = [
    "BufferPool",
    "BufferPoolExhausted",
    "Detection",
    "DisplaySink",
    "Frame",
    "FrameScheduler",
    "FrameSource",
    "ImageSink",
    "ImageSource",
    "InferenceError",
    "LetterboxParams",
    "LiveConfig",
    "LoadError",
    "LoadingState",
    "ModelHandle",
    "MultiSink",
    "Orchestrator",
    "RawOutputs",
    "SegscopeError",
    "SourceError",
    "State",
    "StateError",
    "Surface",
    "SyntheticSource",
    "UploadSource",
    "VideoSource",
    "decode",
    "hud",
    "infer",
    "load",
    "load_model",
    "open_source",
    "render",
]
