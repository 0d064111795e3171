# segscope/live/model.py
"""
Model loading for live segmentation.

``load_model(uri)`` returns a ``ModelLoad``: a lazy, one-shot iterable of
progress fractions.  Iterating it fetches the artifact, builds the ONNX Runtime
session, checks the declared input/output shapes and runs a single warm-up
inference; ``result()`` then hands back the immutable ``ModelHandle``.

    job = load_model("models/yolo11n-seg.onnx", pool=pool)
    for fraction in job:
        spinner.update(progress=fraction)
    handle = job.result()

``load()`` is the callback flavour for callers that do not need to interleave
other work with the load.
"""
from __future__ import annotations

import hashlib
import http.client
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from segscope.logging_config import log_event
from segscope.progress import ProgressEngine
from segscope.progress.integrations import iter_download, iter_read

from .buffers import BufferPool
from .config import LiveConfig
from .errors import LoadError

LOGGER = logging.getLogger(__name__)

FETCH_SHARE = 0.9
PARSE_MARK = 0.95

Shape = Tuple[int, ...]


def _log(event: str, **info: object) -> None:
    log_event(LOGGER, logging.INFO, event, **info)


class Model(Protocol):
    """What the pipeline needs from a loaded network."""

    input_shape: Sequence[Any]

    def execute(self, tensor: np.ndarray) -> Sequence[np.ndarray]: ...


class OnnxModel:
    """Thin wrapper around ``onnxruntime.InferenceSession``."""

    def __init__(self, session: Any) -> None:
        self.session = session
        inputs = session.get_inputs()
        if not inputs:
            raise LoadError("model declares no inputs")
        self.input_name: str = inputs[0].name
        self.input_shape: Tuple[Any, ...] = tuple(inputs[0].shape)
        self.output_names: List[str] = [o.name for o in session.get_outputs()]
        self.providers: List[str] = list(session.get_providers())

    @classmethod
    def from_bytes(cls, data: bytes, providers: Sequence[str] = ("CPUExecutionProvider",)) -> "OnnxModel":
        opts = ort.SessionOptions()
        opts.log_severity_level = 3
        session = ort.InferenceSession(data, sess_options=opts, providers=list(providers))
        return cls(session)

    def execute(self, tensor: np.ndarray) -> List[np.ndarray]:
        return list(self.session.run(self.output_names, {self.input_name: tensor}))


def deserialize_onnx(data: bytes, providers: Sequence[str]) -> Model:
    return OnnxModel.from_bytes(data, providers)


Deserializer = Callable[[bytes, Sequence[str]], Model]


@dataclass(frozen=True)
class ModelHandle:
    model: Model
    name: str
    input_shape: Tuple[int, int, int, int]  # (batch, height, width, channels)
    layout: str  # "nchw" | "nhwc"
    output_shapes: Tuple[Shape, ...]
    source: str

    @property
    def input_hw(self) -> Tuple[int, int]:
        return self.input_shape[1], self.input_shape[2]

    @property
    def native_input_shape(self) -> Tuple[int, int, int, int]:
        b, h, w, c = self.input_shape
        return (b, c, h, w) if self.layout == "nchw" else (b, h, w, c)

    @property
    def has_masks(self) -> bool:
        return len(self.output_shapes) >= 2


# ---------------------------------------------------------------------------
# URI handling
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedURI:
    kind: str  # "local" | "remote"
    location: str

    @property
    def path(self) -> Path:
        return Path(self.location)


def resolve_uri(uri: str, base: Optional[str] = None) -> ResolvedURI:
    """Resolve *uri* against *base* (directory or URL; default: cwd)."""
    text = (uri or "").strip()
    if not text:
        raise LoadError("empty model URI")
    parsed = urllib.parse.urlparse(text)
    if parsed.scheme in ("http", "https"):
        return ResolvedURI("remote", text)
    if parsed.scheme == "file":
        return ResolvedURI("local", urllib.request.url2pathname(parsed.path))
    if parsed.scheme and len(parsed.scheme) > 1:
        raise LoadError(f"unsupported model URI scheme {parsed.scheme!r}", uri=text)

    path = Path(text).expanduser()
    if path.is_absolute():
        return ResolvedURI("local", str(path))
    if base:
        base_parsed = urllib.parse.urlparse(base)
        if base_parsed.scheme in ("http", "https"):
            joined = urllib.parse.urljoin(base.rstrip("/") + "/", text)
            return ResolvedURI("remote", joined)
        if base_parsed.scheme == "file":
            base = urllib.request.url2pathname(base_parsed.path)
        return ResolvedURI("local", str(Path(base).expanduser() / path))
    return ResolvedURI("local", str(Path.cwd() / path))


def cache_path_for(url: str, cache_dir: Path) -> Path:
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
    name = Path(urllib.parse.urlparse(url).path).name or "model.onnx"
    return Path(cache_dir) / f"{digest}-{name}"


# ---------------------------------------------------------------------------
# Shape handshake
# ---------------------------------------------------------------------------

def _static_dim(value: Any) -> Optional[int]:
    if isinstance(value, (int, np.integer)) and int(value) > 0:
        return int(value)
    return None


def resolve_input_shape(declared: Sequence[Any], imgsz: int) -> Tuple[str, Tuple[int, int, int, int]]:
    """
    Return ``(layout, (batch, height, width, channels))`` for a declared model
    input, filling symbolic dims with batch 1 and *imgsz*.
    """
    dims = list(declared)
    if len(dims) != 4:
        raise LoadError(f"expected a rank-4 image input, got shape {tuple(dims)}")
    static = [_static_dim(d) for d in dims]
    if static[1] == 3:
        layout = "nchw"
        b, c, h, w = static
    elif static[3] == 3:
        layout = "nhwc"
        b, h, w, c = static
    else:
        raise LoadError(f"expected a 3-channel image input, got shape {tuple(dims)}")
    if b not in (None, 1):
        raise LoadError(f"expected batch size 1, got {b}")
    return layout, (1, h or imgsz, w or imgsz, 3)


def validate_output_shapes(shapes: Sequence[Shape], layout: str) -> None:
    if not shapes:
        raise LoadError("model produced no outputs")
    primary = shapes[0]
    if len(primary) != 3:
        raise LoadError(f"expected a rank-3 prediction output, got shape {primary}")
    channels = min(primary[1], primary[2])
    mask_dim = 0
    if len(shapes) >= 2:
        protos = shapes[1]
        if len(protos) != 4:
            raise LoadError(f"expected a rank-4 mask prototype output, got shape {protos}")
        mask_dim = protos[1] if layout == "nchw" else protos[3]
    if channels <= 4 + mask_dim:
        raise LoadError(
            f"prediction output {primary} leaves no class scores (mask dim {mask_dim})"
        )


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class ModelLoad:
    """
    One-shot model load.  Iterate to drive it; each value is the fraction
    completed so far (non-decreasing, last value exactly 1.0).
    """

    def __init__(
        self,
        uri: str,
        *,
        pool: BufferPool,
        config: LiveConfig,
        deserialize: Optional[Deserializer] = None,
    ) -> None:
        self.uri = uri
        self.pool = pool
        self.config = config
        self._deserialize = deserialize
        self._started = False
        self._handle: Optional[ModelHandle] = None
        self._error: Optional[LoadError] = None
        self._last = 0.0

    @property
    def done(self) -> bool:
        return self._handle is not None or self._error is not None

    def result(self) -> ModelHandle:
        if self._error is not None:
            raise self._error
        if self._handle is None:
            raise RuntimeError("model load has not finished; iterate it first")
        return self._handle

    def __iter__(self) -> Iterator[float]:
        if self._started:
            raise RuntimeError("a ModelLoad can only be iterated once")
        self._started = True
        return self._run()

    def _mark(self, value: float) -> float:
        self._last = max(self._last, min(1.0, value))
        return self._last

    def _run(self) -> Iterator[float]:
        try:
            yield from self._steps()
        except LoadError as exc:
            self._error = exc
            log_event(LOGGER, logging.ERROR, "live.loader.error", uri=self.uri, error=str(exc))
            raise

    def _steps(self) -> Iterator[float]:
        resolved = resolve_uri(self.uri, self.config.base_uri)
        _log("live.loader.start", uri=self.uri, kind=resolved.kind, location=resolved.location)
        yield self._mark(0.0)

        engine = ProgressEngine()
        data = bytearray()
        try:
            if resolved.kind == "remote":
                cached = cache_path_for(resolved.location, self.config.cache_dir)
                if cached.exists():
                    _log("live.loader.cache_hit", path=cached)
                else:
                    for _ in iter_download(resolved.location, cached, engine, chunk_size=self.config.chunk_size):
                        yield self._mark(FETCH_SHARE * engine.fraction)
                data.extend(cached.read_bytes())
            else:
                path = resolved.path
                if not path.is_file():
                    raise LoadError(f"model artifact not found: {path}", uri=self.uri)
                for chunk in iter_read(path, engine, chunk_size=self.config.chunk_size):
                    data.extend(chunk)
                    yield self._mark(FETCH_SHARE * engine.fraction)
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            raise LoadError(f"failed to fetch model artifact {resolved.location}: {exc}", uri=self.uri) from exc
        yield self._mark(FETCH_SHARE)

        if not data:
            raise LoadError(f"model artifact is empty: {resolved.location}", uri=self.uri)
        deserialize = self._deserialize or deserialize_onnx
        try:
            model = deserialize(bytes(data), self.config.providers)
        except LoadError:
            raise
        except Exception as exc:
            raise LoadError(f"malformed model artifact {resolved.location}: {exc}", uri=self.uri) from exc
        del data
        yield self._mark(PARSE_MARK)

        layout, input_shape = resolve_input_shape(getattr(model, "input_shape", ()), self.config.imgsz)
        output_shapes = self._warmup(model, layout, input_shape)
        validate_output_shapes(output_shapes, layout)

        self._handle = ModelHandle(
            model=model,
            name=_stem(self.uri),
            input_shape=input_shape,
            layout=layout,
            output_shapes=output_shapes,
            source=resolved.location,
        )
        _log(
            "live.loader.ready",
            name=self._handle.name,
            input=input_shape,
            layout=layout,
            outputs=output_shapes,
        )
        yield self._mark(1.0)

    def _warmup(self, model: Model, layout: str, input_shape: Tuple[int, int, int, int]) -> Tuple[Shape, ...]:
        b, h, w, c = input_shape
        native = (b, c, h, w) if layout == "nchw" else (b, h, w, c)
        rng = np.random.default_rng(self.config.warmup_seed)
        with self.pool.scope() as scope:
            dummy = scope.acquire(native, np.float32)
            dummy[...] = rng.random(native, dtype=np.float32)
            try:
                outputs = model.execute(dummy)
            except Exception as exc:
                raise LoadError(f"warm-up inference failed: {exc}", uri=self.uri) from exc
            shapes = tuple(tuple(int(d) for d in scope.adopt(out).shape) for out in outputs)
        _log("live.loader.warmup", shape=native, outputs=shapes)
        return shapes


def _stem(uri: str) -> str:
    name = Path(urllib.parse.urlparse(uri).path or uri).name
    return name.rsplit(".", 1)[0] if "." in name else name


def load_model(
    uri: str,
    *,
    pool: Optional[BufferPool] = None,
    config: Optional[LiveConfig] = None,
    deserialize: Optional[Deserializer] = None,
) -> ModelLoad:
    return ModelLoad(
        uri,
        pool=pool if pool is not None else BufferPool(),
        config=config if config is not None else LiveConfig(),
        deserialize=deserialize,
    )


def load(
    uri: str,
    on_progress: Optional[Callable[[float], None]] = None,
    *,
    pool: Optional[BufferPool] = None,
    config: Optional[LiveConfig] = None,
    deserialize: Optional[Deserializer] = None,
) -> ModelHandle:
    """Load *uri*, calling ``on_progress(fraction)`` along the way."""
    job = load_model(uri, pool=pool, config=config, deserialize=deserialize)
    for fraction in job:
        if on_progress is not None:
            on_progress(fraction)
    return job.result()


__all__ = [
    "Model",
    "ModelHandle",
    "ModelLoad",
    "OnnxModel",
    "cache_path_for",
    "deserialize_onnx",
    "load",
    "load_model",
    "resolve_input_shape",
    "resolve_uri",
    "validate_output_shapes",
]
