"""Logging setup for segscope.

``setup_logging`` attaches one file handler to the ``segscope`` logger and
``log_event`` writes the ``event key=value ...`` lines every module emits.

ONNX Runtime's own logger prints provider banners for every session it
builds; it is turned down to errors as soon as this module is imported.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional

os.environ.setdefault("ORT_LOGGING_LEVEL", "3")
import onnxruntime as _ort  # noqa: E402

_ort.set_default_logger_severity(3)

__all__ = ["log_event", "setup_logging"]

APP_NAME = "segscope"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_active_log: Optional[Path] = None


def _user_log_dir() -> Path:
    if os.name == "nt":
        root = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
        return (Path(root) if root else Path.home() / "AppData" / "Local") / APP_NAME / "logs"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Logs" / APP_NAME
    state_home = os.getenv("XDG_STATE_HOME")
    return (Path(state_home) if state_home else Path.home() / ".local" / "state") / APP_NAME


def _log_level(name: Optional[str]) -> int:
    level = logging.getLevelName((name or "ERROR").strip().upper())
    return level if isinstance(level, int) else logging.ERROR


def _open_handler(target: Path) -> logging.FileHandler:
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(target, encoding="utf-8")
    except OSError:
        # read-only home (containers, CI sandboxes)
        return logging.FileHandler(Path(tempfile.gettempdir()) / f"{APP_NAME}.log", encoding="utf-8")


def setup_logging(*, force: bool = False) -> Path:
    """
    Send ``segscope.*`` records at ``SEGSCOPE_LOG_LEVEL`` (default ERROR) and
    above to ``SEGSCOPE_LOG_FILE`` or ``<user log dir>/segscope.log``.

    Calling it again is a no-op unless *force* is set; the path of the
    active log file is returned either way.
    """
    global _active_log

    if _active_log is not None and not force:
        return _active_log

    override = os.getenv("SEGSCOPE_LOG_FILE")
    target = Path(override).expanduser() if override else _user_log_dir() / f"{APP_NAME}.log"
    level = _log_level(os.getenv("SEGSCOPE_LOG_LEVEL"))

    handler = _open_handler(target)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    pkg_logger = logging.getLogger(APP_NAME)
    for old in list(pkg_logger.handlers):
        pkg_logger.removeHandler(old)
        old.close()
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)

    _active_log = Path(handler.baseFilename)
    return _active_log


def log_event(logger: logging.Logger, level: int, event: str, **info: object) -> None:
    """Emit ``event k=v ...`` with keys sorted and ``None`` values dropped."""
    if not logger.isEnabledFor(level):
        return
    detail = " ".join(f"{key}={info[key]}" for key in sorted(info) if info[key] is not None)
    if detail:
        logger.log(level, "%s %s", event, detail)
    else:
        logger.log(level, "%s", event)
