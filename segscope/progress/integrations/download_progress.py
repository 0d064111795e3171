# segscope/progress/integrations/download_progress.py
"""
Stream a model artifact to disk chunk by chunk, reporting byte progress to a
``ProgressEngine``.  Written as a generator so the caller decides when the
next chunk is pulled; nothing here blocks longer than one read.

Writes are atomic (*.part -> final).
"""
from __future__ import annotations

import os
import urllib.request
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from ..engine import ProgressEngine

USER_AGENT = "segscope/1.0"


def _content_length(hdrs: Optional[Mapping[str, Any]]) -> int:
    if not hdrs:
        return 0
    raw = hdrs.get("Content-Length", None)
    if raw is None:
        return 0
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("ascii", "ignore")
    try:
        return max(0, int(str(raw).strip()))
    except ValueError:
        return 0


def iter_download(
    url: str,
    dest_path: Path,
    engine: Optional[ProgressEngine] = None,
    *,
    chunk_size: int = 1024 * 1024,
    timeout: float = 30.0,
) -> Iterator[int]:
    """
    Download *url* to *dest_path*, yielding the byte count after each chunk.

    Network errors (``urllib.error.URLError``/``OSError``) propagate; a partial
    ``*.part`` file is removed before they do.
    """
    dest = Path(dest_path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(dest.suffix + ".part")

    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    done = 0
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:  # nosec B310
            total = _content_length(getattr(resp, "headers", None))
            if engine is not None:
                engine.set_total(float(total) if total > 0 else 1.0)
                engine.set_current(dest.name)
            with tmp.open("wb") as fh:
                for chunk in iter(lambda: resp.read(chunk_size), b""):
                    fh.write(chunk)
                    done += len(chunk)
                    if engine is not None and total > 0:
                        engine.add(len(chunk))
                    yield done
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise

    os.replace(tmp, dest)
    if engine is not None:
        engine.finish()


def iter_read(
    path: Path,
    engine: Optional[ProgressEngine] = None,
    *,
    chunk_size: int = 1024 * 1024,
) -> Iterator[bytes]:
    """Read a local artifact in chunks, reporting bytes read to *engine*."""
    size = path.stat().st_size
    if engine is not None:
        engine.set_total(float(size) if size > 0 else 1.0)
        engine.set_current(path.name)
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            if engine is not None:
                engine.add(len(chunk))
            yield chunk
    if engine is not None:
        engine.finish()
