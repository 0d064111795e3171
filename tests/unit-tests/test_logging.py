from __future__ import annotations

import logging

import pytest

from segscope.logging_config import log_event, setup_logging


def test_log_event_sorts_keys_and_drops_none(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("segscope.tests.events")
    with caplog.at_level(logging.INFO, logger="segscope.tests.events"):
        log_event(logger, logging.INFO, "live.cli.session", source="cam", headless=True, save=None)
        log_event(logger, logging.INFO, "live.pipeline.end")
    messages = [r.getMessage() for r in caplog.records]
    assert messages == ["live.cli.session headless=True source=cam", "live.pipeline.end"]


def test_log_event_respects_level(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("segscope.tests.quiet")
    with caplog.at_level(logging.ERROR, logger="segscope.tests.quiet"):
        log_event(logger, logging.INFO, "live.scheduler.idle", ticks=3)
    assert not caplog.records


def test_setup_logging_writes_to_configured_file(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "run" / "live.log"
    monkeypatch.setenv("SEGSCOPE_LOG_FILE", str(target))
    monkeypatch.setenv("SEGSCOPE_LOG_LEVEL", "warning")
    try:
        assert setup_logging(force=True) == target
        assert setup_logging() == target

        logger = logging.getLogger("segscope.live.pipeline")
        log_event(logger, logging.WARNING, "live.pipeline.notice", message="camera unplugged")
        log_event(logger, logging.INFO, "live.pipeline.start", source="camera:0")
        for handler in logging.getLogger("segscope").handlers:
            handler.flush()

        text = target.read_text(encoding="utf-8")
        assert "live.pipeline.notice message=camera unplugged" in text
        assert "live.pipeline.start" not in text
    finally:
        pkg = logging.getLogger("segscope")
        for handler in list(pkg.handlers):
            pkg.removeHandler(handler)
            handler.close()
        pkg.setLevel(logging.NOTSET)
