"""remtex - timestamp fingerprints of user class/style/config files."""
from __future__ import annotations

import os
from pathlib import Path

from remtex_core.protocol import STATE_DIR, STYLE_SUFFIXES


def style_fingerprint(root: Path) -> dict[str, int]:
    """Map each user class/style/config file under root to its mtime in ns."""
    root = Path(root)
    fp: dict[str, int] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d != STATE_DIR)
        for name in sorted(filenames):
            if not name.endswith(STYLE_SUFFIXES):
                continue
            p = Path(dirpath) / name
            try:
                fp[p.relative_to(root).as_posix()] = p.stat().st_mtime_ns
            except FileNotFoundError:
                continue
    return fp
