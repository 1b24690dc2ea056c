"""Upload archives of the dependency set."""
from __future__ import annotations

import tarfile
from collections.abc import Iterable
from pathlib import Path, PurePosixPath


def member_name(name: str) -> str:
    """Archive member name with leading '/' and '../' removed, as tar does."""
    parts = list(PurePosixPath(name).parts)
    while parts and parts[0] in ("/", ".."):
        parts.pop(0)
    return PurePosixPath(*parts).as_posix() if parts else ""


def write_archive(
    names: Iterable[str],
    base: Path,
    dest: Path,
    newer_than: float,
    compressed: bool,
    always: Iterable[str] = (),
) -> int:
    """Archive every file modified at or after `newer_than`, plus every name in
    `always` regardless of age. Returns the member count.
    """
    base = Path(base)
    always = set(always)
    count = 0
    with tarfile.open(dest, "w:gz" if compressed else "w") as tar:
        for name in names:
            p = base / name
            try:
                mtime = p.stat().st_mtime
            except FileNotFoundError:
                continue
            arcname = member_name(name)
            if not arcname or (mtime < newer_than and name not in always):
                continue
            tar.add(p, arcname=arcname, recursive=False)
            count += 1
    return count
