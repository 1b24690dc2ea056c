"""Remote execution channel: ssh, or a plain subprocess for the local host."""
from __future__ import annotations

import os
import shlex
import subprocess
import sys
from typing import IO

from remtex_core.protocol import LOCAL_HOST

REMOTE_MODULE = "remtex_compile.cli"
SSH = ("ssh", "-T")


class RemoteChannel:
    """Run remtex_compile subcommands on a host with environment variables."""

    def __init__(self, host: str, python: str | None = None):
        self.host = host
        self.local = host == LOCAL_HOST
        if python is None:
            python = sys.executable if self.local else "python3"
        self.python = python

    @property
    def compressed(self) -> bool:
        # Plain archives only on the same host
        return not self.local

    def command(self, sub: str, env: dict[str, str]) -> list[str]:
        remote = [self.python, "-m", REMOTE_MODULE, sub]
        if self.local:
            return remote
        assignments = [f"{k}={v}" for k, v in sorted(env.items())]
        return [*SSH, self.host, shlex.join(["env", *assignments, *remote])]

    def invoke(self, sub: str, env: dict[str, str], stdin: IO[bytes] | int | None) -> subprocess.Popen:
        """Start a subcommand. stdout is binary data, stderr diagnostics."""
        return subprocess.Popen(
            self.command(sub, env),
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env={**os.environ, **env} if self.local else None,
        )
