# segscope.live.cli: command-line UI surface ("segscope image|upload|video|camera")
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Callable, Optional

import typer

from segscope.logging_config import log_event, setup_logging
from segscope.progress import loader_spinner

from .camera import FrameSource, ImageSource, UploadSource, VideoSource, open_source
from .config import LiveConfig
from .errors import LoadError, SourceError
from .pipeline import Orchestrator
from .sinks import DisplaySink, ImageSink, Sink, Surface, VideoSink

LOGGER = logging.getLogger(__name__)

QUIT_KEYS = (ord("q"), 27)

app = typer.Typer(add_completion=False, help="Live YOLO11 instance segmentation on images, uploads, video and cameras.")


def _log(event: str, **info: object) -> None:
    log_event(LOGGER, logging.INFO, event, **info)


def _config(model: Optional[str], conf: Optional[float], iou: Optional[float]) -> LiveConfig:
    try:
        return LiveConfig.from_env().with_overrides(model_uri=model, conf=conf, iou=iou)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _notice(message: str) -> None:
    typer.secho(f"notice: {message}", err=True, fg=typer.colors.YELLOW)


def _session(
    open_fn: Callable[[], FrameSource],
    *,
    title: str,
    still: bool,
    model: Optional[str],
    conf: Optional[float],
    iou: Optional[float],
    headless: bool,
    save: Optional[Path],
    max_frames: Optional[int],
) -> None:
    setup_logging()
    cfg = _config(model, conf, iou)

    display = DisplaySink(f"segscope ({title})", headless=headless)
    saver: Optional[Sink] = None
    if save is not None:
        saver = ImageSink(save) if still else VideoSink(save, fps=cfg.fps)
    surface = Surface(display, saver)
    orch = Orchestrator(surface, config=cfg, on_notice=_notice, show_hud=not headless and not still)
    _log("live.cli.session", source=title, model=cfg.model_uri, save=save, headless=headless)

    try:
        try:
            with loader_spinner() as sp:
                for snapshot in orch.loading_steps():
                    sp.update(progress=snapshot.progress)
        except LoadError as exc:
            typer.secho(f"model load failed: {exc}", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)

        try:
            source = open_fn()
        except SourceError as exc:
            _notice(str(exc))
            raise typer.Exit(code=1)
        orch.show(source)

        def _should_stop() -> bool:
            if max_frames is not None and orch.cycles >= max_frames:
                orch.stop()
                return True
            if display.poll_key() in QUIT_KEYS:
                _log("live.cli.stop", reason="user-exit", frames=orch.cycles)
                orch.stop()
                return True
            return False

        orch.run(_should_stop)

        if still and not headless:
            # keep the result on screen until the window is closed or q/Esc
            while display.is_open() and display.poll_key() not in QUIT_KEYS:
                pass
    except KeyboardInterrupt:
        _log("live.cli.stop", reason="interrupt", frames=orch.cycles)
    finally:
        orch.close()

    typer.echo(f"{orch.cycles} frame(s), {orch.last_detection_count} detection(s) in last frame")
    if orch.skipped_cycles:
        typer.echo(f"{orch.skipped_cycles} frame(s) skipped after inference errors")
    if isinstance(saver, ImageSink) and saver.written is not None:
        typer.echo(f"saved {saver.written}")
    elif isinstance(saver, VideoSink) and saver.frames:
        typer.echo(f"saved {saver.output_path}")


_MODEL = typer.Option(None, "--model", "-m", help="Model artifact path or URL (default: SEGSCOPE_MODEL_URI or models/yolo11n-seg.onnx).")
_CONF = typer.Option(None, "--conf", help="Confidence threshold (default 0.25).")
_IOU = typer.Option(None, "--iou", help="Overlap suppression IoU threshold (default 0.45).")
_HEADLESS = typer.Option(False, "--headless", help="Disable the preview window.")
_MAX_FRAMES = typer.Option(None, "--max-frames", min=1, help="Stop after this many frames.")


@app.command()
def image(
    path: Path = typer.Argument(..., help="Image file to segment."),
    model: Optional[str] = _MODEL,
    conf: Optional[float] = _CONF,
    iou: Optional[float] = _IOU,
    headless: bool = _HEADLESS,
    save: Optional[Path] = typer.Option(None, "--save", "-o", help="Write the annotated image here."),
) -> None:
    """Segment a still image."""
    _session(
        lambda: ImageSource(path),
        title=path.name,
        still=True,
        model=model,
        conf=conf,
        iou=iou,
        headless=headless,
        save=save,
        max_frames=None,
    )


@app.command()
def upload(
    path: str = typer.Argument(..., help="Image file to hand over as raw bytes ('-' reads stdin)."),
    model: Optional[str] = _MODEL,
    conf: Optional[float] = _CONF,
    iou: Optional[float] = _IOU,
    headless: bool = _HEADLESS,
    save: Optional[Path] = typer.Option(None, "--save", "-o", help="Write the annotated image here."),
) -> None:
    """Segment an uploaded image (decoded from its bytes, whatever the file name says)."""

    def _open() -> FrameSource:
        if path == "-":
            return UploadSource(sys.stdin.buffer.read(), name="stdin")
        p = Path(path)
        try:
            data = p.read_bytes()
        except OSError as exc:
            raise SourceError(f"could not read {p}: {exc}", source=str(p)) from exc
        return UploadSource(data, name=p.name)

    _session(
        _open,
        title="upload",
        still=True,
        model=model,
        conf=conf,
        iou=iou,
        headless=headless,
        save=save,
        max_frames=None,
    )


@app.command()
def video(
    path: str = typer.Argument(..., help="Video file or stream URL."),
    model: Optional[str] = _MODEL,
    conf: Optional[float] = _CONF,
    iou: Optional[float] = _IOU,
    headless: bool = _HEADLESS,
    save: Optional[Path] = typer.Option(None, "--save", "-o", help="Write the annotated video (MP4) here."),
    max_frames: Optional[int] = _MAX_FRAMES,
) -> None:
    """Segment a video file frame by frame."""
    _session(
        lambda: VideoSource(path),
        title=Path(path).name or path,
        still=False,
        model=model,
        conf=conf,
        iou=iou,
        headless=headless,
        save=save,
        max_frames=max_frames,
    )


@app.command()
def camera(
    index: str = typer.Argument("0", help="Camera index, or 'synthetic' for a generated test pattern."),
    model: Optional[str] = _MODEL,
    conf: Optional[float] = _CONF,
    iou: Optional[float] = _IOU,
    headless: bool = _HEADLESS,
    save: Optional[Path] = typer.Option(None, "--save", "-o", help="Write the annotated stream (MP4) here."),
    max_frames: Optional[int] = _MAX_FRAMES,
) -> None:
    """Segment a live camera feed until q/Esc, window close or --max-frames."""
    token = index if index.lower().startswith("synthetic") else f"camera:{index}"
    _session(
        lambda: open_source(token),
        title=token,
        still=False,
        model=model,
        conf=conf,
        iou=iou,
        headless=headless,
        save=save,
        max_frames=max_frames,
    )


def main() -> None:  # pragma: no cover
    try:
        app()
    except KeyboardInterrupt:
        raise SystemExit(0)


if __name__ == "__main__":  # pragma: no cover
    main()
