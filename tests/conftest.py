import os
from pathlib import Path

import pytest

REPO = Path(__file__).resolve().parents[1]


@pytest.fixture(autouse=True)
def _subprocess_path(monkeypatch):
    # Holder processes and CLIs run as `python -m ...` in child processes.
    parts = [str(REPO / "src")]
    if os.environ.get("PYTHONPATH"):
        parts.append(os.environ["PYTHONPATH"])
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(parts))
    for name in list(os.environ):
        if name.startswith("REMTEX_"):
            monkeypatch.delenv(name)
