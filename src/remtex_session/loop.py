"""Local session loop: watch, upload, compile remotely, receive the output."""
from __future__ import annotations

import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO
from warnings import warn

import click

from remtex_core import blocksync
from remtex_core.blocksync import Receiver, StreamError
from remtex_core.deps import scan_dependencies
from remtex_core.errors import RemoteError, RemtexError, SetupError
from remtex_core.protocol import (
    ARCHIVE_GZ,
    ARCHIVE_PLAIN,
    ENV_ARCHIVE,
    ENV_COMPILER,
    ENV_FIRST,
    ENV_HELPER,
    ENV_JOB,
    ENV_WORKDIR,
    OUTPUT_EXT,
    PENDING_FMT,
    POLL_INTERVAL,
    RECOMPILE_MARKER,
    SOURCE_RETRY_DELAY,
    STATUS_PREFIX,
    STAMP_FMT,
    UPLOAD_FMT,
)
from remtex_core.watcher import ChangeWatcher
from remtex_session.archive import write_archive
from remtex_session.baseline import FreshnessBaseline
from remtex_session.remote import RemoteChannel

_STATUS_RE = re.compile(r"^REMTEX status=(-?\d+) elapsed=([0-9.]+) recompiled=([01])$")


def resolve_source(arg: str) -> Path:
    """Find the source file for a command-line argument (tab-completion tolerant)."""
    candidates = [arg]
    if arg.endswith("."):
        candidates.append(arg + "tex")
    elif not arg.endswith(".tex"):
        candidates.append(arg + ".tex")
    found: list[Path] = []
    for c in candidates:
        p = Path(c).resolve()
        if p.is_file() and p not in found:
            found.append(p)
    if not found:
        raise SetupError("E_SOURCE_MISSING", arg)
    if len(found) > 1:
        raise SetupError("E_SOURCE_AMBIGUOUS", ", ".join(str(p) for p in found))
    if found[0].suffix != ".tex":
        raise SetupError("E_SOURCE_MISSING", f"{found[0]} is not a .tex file")
    return found[0]


def helper_source() -> str:
    """Body of the block stream helper program installed on the remote host."""
    return Path(blocksync.__file__).read_text(encoding="utf-8")


@dataclass
class SessionConfig:
    host: str
    source: Path
    interval: float = POLL_INTERVAL
    compiler: str | None = None
    python: str | None = None
    verbose: bool = False
    bell: bool = False


@dataclass
class RemoteReport:
    status: int | None = None
    elapsed: float = 0.0
    recompiled: bool = False
    diagnostics: list[str] = field(default_factory=list)


def parse_diagnostics(lines: list[str]) -> RemoteReport:
    """Split remote stderr into the status report and human-readable lines."""
    report = RemoteReport()
    for line in lines:
        m = _STATUS_RE.match(line)
        if m:
            report.status = int(m.group(1))
            report.elapsed = float(m.group(2))
            report.recompiled = m.group(3) == "1"
        elif line == RECOMPILE_MARKER:
            report.recompiled = True
        elif not line.startswith(STATUS_PREFIX):
            report.diagnostics.append(line)
    return report


def _collect(stream: IO[bytes], lines: list[str]) -> None:
    for raw in stream:
        lines.append(raw.decode("utf-8", errors="replace").rstrip("\n"))


class Session:
    """One editing session against one remote working directory."""

    def __init__(self, config: SessionConfig, channel: RemoteChannel | None = None):
        self.config = config
        self.source = Path(config.source)
        self.base = self.source.parent
        self.job = self.source.stem
        self.channel = channel or RemoteChannel(config.host, config.python)
        self.baseline = FreshnessBaseline(self.base / STAMP_FMT.format(job=self.job))
        self.pending = self.base / PENDING_FMT.format(job=self.job)
        self.upload = self.base / UPLOAD_FMT.format(job=self.job)
        self.output = self.base / (self.job + OUTPUT_EXT)
        self.workdir: str | None = None
        self.first = True
        self.status = 0
        self.deps: list[str] = []
        # Paths the remote working directory already holds
        self.shipped: set[str] = set()
        # Lower bound for change detection, moved on every attempt
        self.watch_since = 0.0

    def _env(self, helper: bool = False) -> dict[str, str]:
        env = {
            ENV_JOB: self.job,
            ENV_WORKDIR: self.workdir or "",
            ENV_ARCHIVE: ARCHIVE_GZ if self.channel.compressed else ARCHIVE_PLAIN,
            ENV_FIRST: "1" if self.first else "0",
            ENV_HELPER: helper_source() if helper else "",
        }
        if self.config.compiler:
            env[ENV_COMPILER] = self.config.compiler
        return env

    def scan(self) -> list[str]:
        if not self.source.exists():
            # Editors that save by delete-and-recreate leave a short gap.
            time.sleep(SOURCE_RETRY_DELAY)
            if not self.source.exists():
                raise SetupError("E_SOURCE_VANISHED", str(self.source))
        self.deps = scan_dependencies(self.source)
        return self.deps

    def _archive(self, newer_than: float) -> int:
        fresh = [d for d in self.deps if d not in self.shipped]
        return write_archive(
            self.deps, self.base, self.upload, newer_than, self.channel.compressed,
            always=fresh,
        )

    def bootstrap(self) -> str:
        """Upload everything and create the remote working directory."""
        started = time.time()
        self.scan()
        count = self._archive(0.0)
        with open(self.upload, "rb") as archive:
            proc = self.channel.invoke("bootstrap", self._env(helper=True), archive)
            out, err = proc.communicate()
        detail = err.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            raise SetupError("E_BOOTSTRAP", detail or f"exit status {proc.returncode}")
        workdir = out.decode("utf-8", errors="replace").strip()
        if not workdir:
            raise SetupError("E_BOOTSTRAP", "no working directory reported")
        self.workdir = workdir
        self.shipped.update(self.deps)
        self.baseline.advance(started)
        self.watch_since = started
        click.echo(f"remtex: {self.config.host}:{workdir} ({count} files)")
        return workdir

    def watcher(self) -> ChangeWatcher:
        return ChangeWatcher(
            [self.base / d for d in self.deps], interval=self.config.interval
        )

    def wait_for_change(self) -> None:
        self.watcher().wait(since=self.watch_since)

    def iterate(self, wait: bool = True) -> int:
        """One watch/upload/compile/receive cycle. Returns the compiler status."""
        if wait:
            self.wait_for_change()
        self.scan()
        started = time.time()
        # A failed attempt still consumes the change that triggered it.
        self.watch_since = started
        show_all = self.config.verbose or self.first
        self._archive(self.baseline.value)

        lines: list[str] = []
        with open(self.upload, "rb") as archive:
            proc = self.channel.invoke("run", self._env(), archive)
        reader = threading.Thread(target=_collect, args=(proc.stderr, lines), daemon=True)
        reader.start()
        receiver = Receiver(self.pending)
        try:
            receiver.apply(proc.stdout)
            proc.wait()
        except StreamError:
            self.pending.unlink(missing_ok=True)
            raise
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            reader.join()

        report = parse_diagnostics(lines)
        if report.status is None:
            self.pending.unlink(missing_ok=True)
            for line in report.diagnostics:
                click.echo(line, err=True)
            raise RemoteError("E_REMOTE", f"exit status {proc.returncode}")

        # The remote run is authoritative from here on.
        self.baseline.advance(started)
        self.shipped.update(self.deps)
        self.first = False
        self._finish(report, receiver, show_all)
        return report.status

    def _finish(self, report: RemoteReport, receiver: Receiver, show_all: bool) -> None:
        if report.status != 0 or show_all:
            for line in report.diagnostics:
                click.echo(line, err=True)

        if report.status == 0 and receiver.complete:
            os.replace(self.pending, self.output)
        else:
            if report.status == 0:
                warn(f"Output stream for {self.output.name} ended without its final record")
            self.pending.unlink(missing_ok=True)

        outcome = "ok" if report.status == 0 else f"FAILED (status {report.status})"
        extra = ", preamble recompiled" if report.recompiled else ""
        click.echo(f"remtex: {self.job}: {outcome} in {report.elapsed:.2f}s{extra}")
        if self.config.bell:
            click.echo("\a", nl=False)

    def run(self, once: bool = False) -> int:
        """Bootstrap, then compile on every settled change until interrupted."""
        try:
            self.bootstrap()
            wait = False
            while True:
                try:
                    self.status = self.iterate(wait)
                except SetupError:
                    raise
                except (RemtexError, StreamError) as e:
                    self.status = 1
                    click.echo(f"remtex: {e}", err=True)
                if once:
                    break
                wait = True
        finally:
            self.teardown()
        return self.status

    def teardown(self) -> None:
        """Release local staging files and the remote working directory."""
        self.upload.unlink(missing_ok=True)
        self.pending.unlink(missing_ok=True)
        self.baseline.clear()
        if not self.workdir:
            return
        try:
            proc = self.channel.invoke("teardown", self._env(), subprocess.DEVNULL)
            _, err = proc.communicate()
        except OSError as e:
            warn(f"Remote teardown failed: {e}")
            return
        if proc.returncode != 0:
            warn(f"Remote teardown failed: {err.decode('utf-8', errors='replace').strip()}")
        self.workdir = None
