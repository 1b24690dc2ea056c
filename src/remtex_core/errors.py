"""remtex error taxonomy.

Setup errors end the session. Remote and stream errors end one iteration;
the session resumes on the next change. Compiler failures are not errors,
they are reported as a nonzero status.
"""
from __future__ import annotations

from remtex_core.blocksync import StreamError

ERRORS = {
    "E_SOURCE_MISSING": "Source file not found",
    "E_SOURCE_AMBIGUOUS": "Source file name is ambiguous",
    "E_SOURCE_VANISHED": "Source file disappeared",
    "E_BOOTSTRAP": "Remote workspace bootstrap failed",
    "E_ENV": "Remote environment not propagated",
    "E_WORKDIR": "Remote working directory missing",
    "E_UNPACK": "Archive unpack failed",
    "E_STAGING": "Could not write staging file",
    "E_REMOTE": "Remote invocation failed",
}


class RemtexError(Exception):
    """Base error with a stable code from ERRORS."""

    code = "E_REMOTE"

    def __init__(self, code: str | None = None, detail: str = ""):
        if code is not None:
            self.code = code
        self.detail = detail
        message = ERRORS[self.code]
        super().__init__(f"{message}: {detail}" if detail else message)


class SetupError(RemtexError):
    """Fatal to the session."""

    code = "E_BOOTSTRAP"


class RemoteError(RemtexError):
    """Fatal to the current iteration only."""


__all__ = ["ERRORS", "RemtexError", "SetupError", "RemoteError", "StreamError"]
