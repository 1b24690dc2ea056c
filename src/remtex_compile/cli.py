"""remtex remote side - invoked over the remote execution channel.

All parameters arrive as environment variables. stdout carries only the
binary block stream (or, for bootstrap, the working directory path);
everything human-readable goes to stderr.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import click

from remtex_compile.orchestrator import BuildOrchestrator
from remtex_core.errors import RemtexError, SetupError
from remtex_core.protocol import (
    ARCHIVE_GZ,
    DEFAULT_COMPILER,
    ENV_ARCHIVE,
    ENV_COMPILER,
    ENV_FIRST,
    ENV_HELPER,
    ENV_JOB,
    ENV_WORKDIR,
)


def _require(name: str) -> str:
    value = os.environ.get(name, "")
    if not value:
        raise SetupError("E_ENV", name)
    return value


def _fatal(e: Exception) -> None:
    # Fail closed with a single-line reason, no stack trace.
    click.echo(f"FATAL: {e}", err=True)
    raise SystemExit(1)


def _compressed() -> bool:
    return os.environ.get(ENV_ARCHIVE, "") == ARCHIVE_GZ


def _compiler() -> str:
    return os.environ.get(ENV_COMPILER) or DEFAULT_COMPILER


def _orchestrator() -> BuildOrchestrator:
    return BuildOrchestrator(Path(_require(ENV_WORKDIR)), _require(ENV_JOB), compiler=_compiler())


@click.group()
def main() -> None:
    """Remote side of a remtex session."""


@main.command("bootstrap")
def bootstrap_cmd() -> None:
    """Create the working directory from the archive on stdin; print its path."""
    try:
        orch = BuildOrchestrator.bootstrap(
            _require(ENV_JOB),
            sys.stdin.buffer,
            _compressed(),
            _require(ENV_HELPER),
            compiler=_compiler(),
        )
    except RemtexError as e:
        _fatal(e)
    click.echo(str(orch.workdir))


@main.command("run")
def run_cmd() -> None:
    """Unpack the archive on stdin, compile, stream the output on stdout."""
    try:
        orch = _orchestrator()
        result = orch.run(
            sys.stdin.buffer,
            sys.stdout.buffer,
            first=os.environ.get(ENV_FIRST) == "1",
            compressed=_compressed(),
        )
    except RemtexError as e:
        _fatal(e)
    raise SystemExit(result.status if result.status >= 0 else 1)


@main.command("teardown")
def teardown_cmd() -> None:
    """Stop the primed compiler and remove the working directory."""
    try:
        orch = _orchestrator()
        orch.teardown()
    except (RemtexError, OSError) as e:
        _fatal(e)


if __name__ == "__main__":
    main()
