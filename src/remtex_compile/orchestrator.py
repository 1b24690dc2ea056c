"""Remote build orchestrator.

Owns the working directory for one session and drives the compiler through
incremental runs:

    Bootstrapping -> Ready -> Compiling -> Completed
                                 \\-> Aborting -> Recompiling -> Completed

The central optimization is preamble pipelining: after each run a fresh
compiler is started and fed the preamble, so the next run only has to feed
the main body. Reuse is only valid while the preamble text and the user
class/style/config files are unchanged; otherwise the primed compiler is
aborted and replaced.
"""
from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import sys
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, TextIO

import click

from remtex_compile.compiler import CompilerProcess
from remtex_compile.snapshot import AuxSnapshot
from remtex_core.errors import RemoteError
from remtex_core.fingerprint import style_fingerprint
from remtex_core.protocol import (
    BODY_MARKER,
    COMPILER_LOG,
    DEFAULT_COMPILER,
    DOCUMENT_ENCODING,
    HELPER_NAME,
    OUTPUT_EXT,
    PREAMBLE_CACHE,
    PREAMBLE_NEXT,
    RECOMPILE_MARKER,
    STATE_DIR,
    STATUS_FMT,
    WORKDIR_PREFIX,
)


@dataclass(frozen=True)
class RunResult:
    status: int
    elapsed: float
    recompiled: bool


def split_document(text: str) -> tuple[str, str]:
    """Split at the last body marker. The marker stays with the preamble."""
    idx = text.rfind(BODY_MARKER)
    if idx == -1:
        return "", text
    cut = idx + len(BODY_MARKER)
    return text[:cut], text[cut:]


def unpack_archive(archive: BinaryIO, dest: Path, compressed: bool) -> None:
    mode = "r|gz" if compressed else "r|"
    try:
        with tarfile.open(fileobj=archive, mode=mode) as tar:
            tar.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise RemoteError("E_UNPACK", str(e)) from e


class BuildOrchestrator:
    """State machine for one remote working directory."""

    def __init__(
        self,
        workdir: Path,
        job: str,
        compiler: str = DEFAULT_COMPILER,
        diag: TextIO | None = None,
    ):
        self.workdir = Path(workdir)
        self.state_dir = self.workdir / STATE_DIR
        self.job = job
        self.compiler = compiler
        self.diag = diag if diag is not None else sys.stderr
        self.state = "Ready"

    @classmethod
    def bootstrap(
        cls,
        job: str,
        archive: BinaryIO,
        compressed: bool,
        helper: str,
        **kwargs,
    ) -> BuildOrchestrator:
        """Create the working directory, unpack the initial archive, install the helper."""
        try:
            workdir = Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX))
            (workdir / STATE_DIR).mkdir()
        except OSError as e:
            raise RemoteError("E_WORKDIR", str(e)) from e
        orch = cls(workdir, job, **kwargs)
        orch.state = "Bootstrapping"
        unpack_archive(archive, workdir, compressed)
        orch._write_state(HELPER_NAME, helper)
        orch.state = "Ready"
        return orch

    def _write_state(self, name: str, text: str) -> Path:
        p = self.state_dir / name
        try:
            p.write_text(text, encoding=DOCUMENT_ENCODING)
        except OSError as e:
            raise RemoteError("E_STAGING", f"{p}: {e}") from e
        return p

    def _argv(self) -> list[str]:
        return shlex.split(self.compiler.format(job=self.job))

    def _say(self, line: str) -> None:
        click.echo(line, file=self.diag)

    def _start_sender(self, stream: BinaryIO) -> subprocess.Popen:
        return subprocess.Popen(
            [sys.executable, str(self.state_dir / HELPER_NAME), "send", self.job + OUTPUT_EXT],
            cwd=self.workdir,
            stdin=subprocess.PIPE,
            stdout=stream,
        )

    def run(self, archive: BinaryIO, stream: BinaryIO, first: bool, compressed: bool) -> RunResult:
        """One incremental compile. Output blocks are streamed to `stream`."""
        if not self.state_dir.is_dir():
            raise RemoteError("E_WORKDIR", str(self.workdir))
        self.state = "Ready"
        snapshot = AuxSnapshot.capture(self.workdir, self.job)
        old_fp = style_fingerprint(self.workdir)

        sender = self._start_sender(stream)
        try:
            result = self._compile(archive, first, compressed, old_fp, snapshot)
        finally:
            # Closing stdin is the sender's "output is final" signal.
            sender.stdin.close()
            sender.wait()

        self._relay_log()
        self._prime()
        self._say(STATUS_FMT.format(
            status=result.status, elapsed=result.elapsed, recompiled=int(result.recompiled)
        ))
        return result

    def _compile(
        self,
        archive: BinaryIO,
        first: bool,
        compressed: bool,
        old_fp: dict[str, int],
        snapshot: AuxSnapshot,
    ) -> RunResult:
        unpack_archive(archive, self.workdir, compressed)
        new_fp = style_fingerprint(self.workdir)

        source = self.workdir / (self.job + ".tex")
        try:
            text = source.read_text(encoding=DOCUMENT_ENCODING)
        except OSError as e:
            raise RemoteError("E_WORKDIR", f"{source}: {e}") from e
        preamble, body = split_document(text)
        staged = self._write_state(PREAMBLE_NEXT, preamble)

        self.state = "Compiling"
        started = time.monotonic()
        recompiled = False
        if first:
            proc = self._fresh(preamble + body)
        else:
            cache = self.state_dir / PREAMBLE_CACHE
            cached = cache.read_text(encoding=DOCUMENT_ENCODING) if cache.is_file() else None
            primed = CompilerProcess.attach(self.workdir)
            if cached == preamble and old_fp == new_fp and primed is not None:
                proc = primed
                proc.feed(body)
            elif primed is None:
                self._say("remtex: no primed compiler, starting fresh")
                proc = self._fresh(preamble + body)
            else:
                self._say(RECOMPILE_MARKER)
                self.state = "Aborting"
                primed.abort()
                self._promote(staged)
                snapshot.restore()
                self.state = "Recompiling"
                proc = self._fresh(preamble + body)
                recompiled = True

        status = proc.wait()
        elapsed = time.monotonic() - started
        self.state = "Completed"
        self._promote(staged)
        if status != 0:
            snapshot.restore()
        return RunResult(status=status, elapsed=elapsed, recompiled=recompiled)

    def _fresh(self, text: str) -> CompilerProcess:
        proc = CompilerProcess.spawn(self.workdir, self._argv())
        proc.feed(text)
        return proc

    def _promote(self, staged: Path) -> None:
        if staged.exists():
            os.replace(staged, self.state_dir / PREAMBLE_CACHE)

    def _relay_log(self) -> None:
        log = self.state_dir / COMPILER_LOG
        if log.is_file():
            self.diag.write(log.read_text(encoding="utf-8", errors="replace"))
            self.diag.flush()

    def _prime(self) -> None:
        """Start the next run's compiler and feed it the cached preamble."""
        cache = self.state_dir / PREAMBLE_CACHE
        if not cache.is_file():
            return
        proc = CompilerProcess.spawn(self.workdir, self._argv())
        if not proc.feed(cache.read_text(encoding=DOCUMENT_ENCODING)):
            self._say("remtex: primed compiler exited early")

    def teardown(self) -> None:
        """Stop any primed compiler and remove the working directory."""
        primed = CompilerProcess.attach(self.workdir)
        if primed is not None:
            primed.abort()
        shutil.rmtree(self.workdir)
