"""Freshness baseline: the timestamp that tags every upload."""
from __future__ import annotations

import os
from pathlib import Path


class FreshnessBaseline:
    """Lower bound below which no remote copy may be considered current.

    The value never decreases. It is mirrored into the mtime of a marker file
    next to the source so the local state of a session is visible on disk.
    A session always starts from zero: a new remote workspace holds nothing.
    """

    def __init__(self, marker: Path):
        self.marker = Path(marker)
        self.value = 0.0

    def advance(self, t: float) -> float:
        """Move the baseline up to t. Earlier times are ignored."""
        if t > self.value:
            self.value = t
            self.marker.touch()
            os.utime(self.marker, (t, t))
        return self.value

    def clear(self) -> None:
        self.marker.unlink(missing_ok=True)
