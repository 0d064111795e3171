from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
import pytest
from typer.testing import CliRunner

from conftest import FakeSegModel
from segscope.live import cli
from segscope.live import model as model_mod

runner = CliRunner()


@pytest.fixture(autouse=True)
def _fake_runtime(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(model_mod, "deserialize_onnx", lambda data, providers: FakeSegModel())


@pytest.fixture()
def png(tmp_path: Path) -> Path:
    pixels = np.full((480, 640, 3), 40, dtype=np.uint8)
    pixels[100:200, 100:200] = (200, 180, 160)
    path = tmp_path / "street.png"
    assert cv2.imwrite(str(path), pixels)
    return path


def test_image_headless_save(tmp_path: Path, png: Path, model_file: Path) -> None:
    out = tmp_path / "out" / "annotated.png"
    result = runner.invoke(cli.app, ["image", str(png), "--model", str(model_file), "--headless", "--save", str(out)])
    assert result.exit_code == 0, result.output
    assert "1 frame(s), 1 detection(s) in last frame" in result.output
    assert out.exists()
    saved = cv2.imread(str(out))
    assert saved.shape == (480, 640, 3)


def test_missing_model_exits_nonzero(tmp_path: Path, png: Path) -> None:
    result = runner.invoke(cli.app, ["image", str(png), "--model", str(tmp_path / "nope.onnx"), "--headless"])
    assert result.exit_code == 1


def test_bad_threshold_is_a_usage_error(png: Path, model_file: Path) -> None:
    result = runner.invoke(cli.app, ["image", str(png), "--model", str(model_file), "--conf", "3", "--headless"])
    assert result.exit_code == 2


def test_upload_garbage_exits_nonzero(tmp_path: Path, model_file: Path) -> None:
    bogus = tmp_path / "photo.jpg"
    bogus.write_bytes(b"this is not an image")
    result = runner.invoke(cli.app, ["upload", str(bogus), "--model", str(model_file), "--headless"])
    assert result.exit_code == 1


def test_upload_from_stdin(png: Path, model_file: Path) -> None:
    result = runner.invoke(
        cli.app,
        ["upload", "-", "--model", str(model_file), "--headless"],
        input=png.read_bytes(),
    )
    assert result.exit_code == 0, result.output
    assert "1 frame(s)" in result.output


def test_synthetic_camera_stops_after_max_frames(model_file: Path) -> None:
    result = runner.invoke(cli.app, ["camera", "synthetic", "--model", str(model_file), "--headless", "--max-frames", "2"])
    assert result.exit_code == 0, result.output
    assert "2 frame(s)" in result.output


def test_missing_video_exits_nonzero(tmp_path: Path, model_file: Path) -> None:
    result = runner.invoke(cli.app, ["video", str(tmp_path / "clip.mp4"), "--model", str(model_file), "--headless"])
    assert result.exit_code == 1
