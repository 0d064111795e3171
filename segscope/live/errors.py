"""
Error taxonomy for the live segmentation pipeline.

  • LoadError      : model fetch/parse/handshake failure (fatal),
  • InferenceError : execute() rejected a frame (cycle skipped),
  • SourceError    : camera/image/upload could not be opened or decoded (notice),
  • StateError     : call made in the wrong orchestrator state.
"""

from __future__ import annotations

from typing import Optional


class SegscopeError(Exception):
    """Base class for every error raised by segscope."""


class LoadError(SegscopeError):
    """The model artifact could not be fetched, parsed or validated."""

    def __init__(self, message: str, *, uri: Optional[str] = None) -> None:
        super().__init__(message)
        self.uri = uri


class InferenceError(SegscopeError):
    """The model's execute call failed for a single frame."""


class SourceError(SegscopeError):
    """A frame source could not be opened or a frame could not be decoded."""

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class StateError(SegscopeError, RuntimeError):
    pass


__all__ = ["SegscopeError", "LoadError", "InferenceError", "SourceError", "StateError"]
