"""Long-lived compiler process shared by consecutive remote invocations.

The compiler reads its document from a FIFO that it holds open read-write,
so it never sees EOF: a compiler primed with the preamble waits there until
a later invocation feeds it the main body. Later invocations are not its
parent, so a detached holder process waits on it and writes the exit status
to a file.
"""
from __future__ import annotations

import errno
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import click

from remtex_core.protocol import (
    ABORT_GRACE,
    ABORT_LINE,
    COMPILER_FIFO,
    COMPILER_LOG,
    COMPILER_PID,
    COMPILER_POLL,
    COMPILER_STATUS,
    DOCUMENT_ENCODING,
    FEED_TIMEOUT,
    STATE_DIR,
)

NOT_FOUND_STATUS = 127


class CompilerProcess:
    """Handle on a (possibly primed) compiler behind its holder process."""

    def __init__(self, workdir: Path, pid: int, popen: subprocess.Popen | None = None):
        self.workdir = Path(workdir)
        self.state = self.workdir / STATE_DIR
        self.fifo = self.state / COMPILER_FIFO
        self.status_path = self.state / COMPILER_STATUS
        self.pid = pid
        self._popen = popen

    @classmethod
    def spawn(cls, workdir: Path, argv: list[str]) -> CompilerProcess:
        workdir = Path(workdir)
        state = workdir / STATE_DIR
        state.mkdir(exist_ok=True)
        (state / COMPILER_STATUS).unlink(missing_ok=True)
        if not (state / COMPILER_FIFO).exists():
            os.mkfifo(state / COMPILER_FIFO)
        popen = subprocess.Popen(
            [sys.executable, "-m", "remtex_compile.compiler", str(workdir), "--", *argv],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        (state / COMPILER_PID).write_text(str(popen.pid))
        return cls(workdir, popen.pid, popen)

    @classmethod
    def attach(cls, workdir: Path) -> CompilerProcess | None:
        """Reattach to the compiler primed by a previous invocation, if it is alive."""
        pid_path = Path(workdir) / STATE_DIR / COMPILER_PID
        try:
            pid = int(pid_path.read_text())
        except (OSError, ValueError):
            return None
        proc = cls(workdir, pid)
        if proc.exited():
            return None
        return proc

    def status(self) -> int | None:
        try:
            return int(self.status_path.read_text())
        except (OSError, ValueError):
            return None

    def exited(self) -> bool:
        if self.status_path.exists():
            return True
        if self._popen is not None:
            return self._popen.poll() is not None
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def feed(self, text: str) -> bool:
        """Write text to the compiler's input. False if the compiler is gone."""
        deadline = time.monotonic() + FEED_TIMEOUT
        while True:
            try:
                fd = os.open(self.fifo, os.O_WRONLY | os.O_NONBLOCK)
                break
            except OSError as e:
                if e.errno != errno.ENXIO:
                    raise
                # No reader yet: the holder has not opened the FIFO.
                if self.exited() or time.monotonic() > deadline:
                    return False
                time.sleep(COMPILER_POLL)
        os.set_blocking(fd, True)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(text.encode(DOCUMENT_ENCODING))
        except BrokenPipeError:
            return False
        return True

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the compiler exits. None if the timeout expires first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            status = self.status()
            if status is not None:
                return status
            if self.exited():
                status = self.status()
                # Holder killed before it could record a status
                return status if status is not None else -signal.SIGTERM
            if deadline is not None and time.monotonic() > deadline:
                return None
            time.sleep(COMPILER_POLL)

    def kill(self) -> None:
        try:
            os.killpg(self.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

    def abort(self) -> int:
        """Send the abort directive; kill the process group if it is ignored."""
        self.feed(ABORT_LINE)
        status = self.wait(ABORT_GRACE)
        if status is None:
            self.kill()
            status = self.wait()
        return status


def hold(workdir: Path, argv: list[str]) -> int:
    """Run the compiler on the FIFO and record its exit status."""
    state = Path(workdir) / STATE_DIR
    fd = os.open(state / COMPILER_FIFO, os.O_RDWR)
    try:
        with open(state / COMPILER_LOG, "wb") as log:
            proc = subprocess.Popen(
                argv, stdin=fd, stdout=log, stderr=subprocess.STDOUT, cwd=workdir
            )
    except OSError as e:
        with open(state / COMPILER_LOG, "a", encoding="utf-8") as log:
            log.write(f"FATAL: cannot start compiler {argv[0]!r}: {e}\n")
        rc = NOT_FOUND_STATUS
    else:
        os.close(fd)
        fd = -1
        rc = proc.wait()
    finally:
        if fd >= 0:
            os.close(fd)

    tmp = state / (COMPILER_STATUS + ".tmp")
    tmp.write_text(str(rc))
    os.replace(tmp, state / COMPILER_STATUS)
    return rc


@click.command(context_settings={"ignore_unknown_options": True})
@click.argument("workdir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("argv", nargs=-1, required=True, type=click.UNPROCESSED)
def main(workdir: Path, argv: tuple[str, ...]) -> None:
    """Hold one compiler process for WORKDIR."""
    raise SystemExit(hold(workdir, list(argv)))


if __name__ == "__main__":
    main()
