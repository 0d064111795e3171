from __future__ import annotations

from pathlib import Path
from typing import List

from segscope.progress import NullSpinner, ProgressEngine, format_percent, loader_spinner, should_enable_spinners
from segscope.progress.integrations import iter_read


def test_format_percent() -> None:
    assert format_percent(0.0) == "0.00%"
    assert format_percent(0.123456) == "12.35%"
    assert format_percent(1.0) == "100.00%"
    assert format_percent(1.7) == "100.00%"
    assert format_percent(-1) == "0.00%"


def test_engine_never_moves_backwards() -> None:
    engine = ProgressEngine()
    seen: List[float] = []
    off = engine.on_update(seen.append)
    engine.set_total(10)
    engine.add(5)
    engine.set_total(100)  # total discovered late
    engine.add(10)
    engine.finish()
    off()
    engine.add(1)
    assert seen == sorted(seen)
    assert seen[-1] == 1.0
    assert engine.fraction == 1.0


def test_loader_spinner_text_without_tty(monkeypatch) -> None:
    monkeypatch.setenv("SEGSCOPE_NO_SPINNER", "1")
    assert should_enable_spinners() is False
    with loader_spinner() as sp:
        assert isinstance(sp, NullSpinner)
        sp.update(progress=0.5)
        assert sp.text == "Loading model... 50.00%"


def test_iter_read_reports_bytes(tmp_path: Path) -> None:
    path = tmp_path / "blob.bin"
    path.write_bytes(b"x" * 10_000)
    engine = ProgressEngine()
    chunks = list(iter_read(path, engine, chunk_size=4096))
    assert [len(c) for c in chunks] == [4096, 4096, 1808]
    assert engine.fraction == 1.0
