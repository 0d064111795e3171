"""
`python -m segscope …` forwards to the Typer CLI in `segscope.live.cli`.
"""

from __future__ import annotations

from segscope.live.cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
