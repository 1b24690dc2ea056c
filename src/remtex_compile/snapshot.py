"""Auxiliary artifact snapshot: undo partial writes of an aborted or failed run."""
from __future__ import annotations

from pathlib import Path

from remtex_core.protocol import AUX_SUFFIXES


class AuxSnapshot:
    """In-memory copy of the compiler's cross-run state files."""

    def __init__(self, workdir: Path, files: dict[str, bytes | None]):
        self.workdir = Path(workdir)
        self.files = files

    @classmethod
    def capture(cls, workdir: Path, job: str) -> AuxSnapshot:
        workdir = Path(workdir)
        names = {job + suffix for suffix in AUX_SUFFIXES}
        # \include'd chapters keep their own .aux files
        names.update(p.name for p in workdir.glob("*.aux"))
        files: dict[str, bytes | None] = {}
        for name in sorted(names):
            p = workdir / name
            files[name] = p.read_bytes() if p.is_file() else None
        return cls(workdir, files)

    def restore(self) -> None:
        """Put every captured file back byte-for-byte; drop files that were absent."""
        for name, content in self.files.items():
            p = self.workdir / name
            if content is None:
                p.unlink(missing_ok=True)
            else:
                p.write_bytes(content)
        # Aux files created by the failed run
        for p in self.workdir.glob("*.aux"):
            if p.name not in self.files:
                p.unlink(missing_ok=True)
