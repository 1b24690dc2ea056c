"""Block until a set of files has changed and then stopped changing."""
from __future__ import annotations

import os
import sys
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from warnings import warn

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from remtex_core.protocol import POLL_INTERVAL


class _CloseHandler(FileSystemEventHandler):
    """Fire on write-close (or rename onto) one of the watched paths."""

    def __init__(self, paths: set[str], fired: threading.Event):
        super().__init__()
        self.paths = paths
        self.fired = fired

    def on_closed(self, event: FileSystemEvent) -> None:
        if os.path.abspath(event.src_path) in self.paths:
            self.fired.set()

    def on_moved(self, event: FileSystemEvent) -> None:
        # Rename-over saves never close the watched path itself.
        if os.path.abspath(event.dest_path) in self.paths:
            self.fired.set()


class ChangeWatcher:
    """Change detection followed by a settle phase.

    States: waiting -> changed -> settled. `settled(now)` is the only timing
    predicate; clock and sleep are injectable so it can run on a fake clock.
    """

    def __init__(
        self,
        paths: Iterable[str | Path],
        interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        notify: bool | None = None,
    ):
        self.paths = [os.path.abspath(p) for p in paths]
        self.interval = interval
        self.clock = clock
        self.sleep = sleep
        self.notify = sys.platform.startswith("linux") if notify is None else notify

    def _mtime(self, path: str) -> float | None:
        try:
            return os.stat(path).st_mtime
        except OSError:
            return None

    def changed_since(self, since: float) -> bool:
        for p in self.paths:
            m = self._mtime(p)
            if m is not None and m > since:
                return True
        return False

    def settled(self, now: float) -> bool:
        """True when no watched file was modified within the last interval."""
        threshold = now - self.interval
        for p in self.paths:
            m = self._mtime(p)
            # Vanished files never hold up settling.
            if m is not None and m > threshold:
                return False
        return True

    def _wait_notify(self, since: float) -> bool:
        fired = threading.Event()
        handler = _CloseHandler(set(self.paths), fired)
        observer = Observer()
        dirs = sorted({os.path.dirname(p) for p in self.paths if os.path.isdir(os.path.dirname(p))})
        if not dirs:
            return False
        for d in dirs:
            observer.schedule(handler, d, recursive=False)
        try:
            observer.start()
        except OSError as e:
            warn(f"Write-close notifications unavailable ({e}); polling every {self.interval}s")
            return False
        try:
            if self.changed_since(since):
                return True
            while not fired.wait(1.0):
                pass
            return True
        finally:
            observer.stop()
            observer.join()

    def _wait_poll(self, since: float) -> None:
        while not self.changed_since(since):
            self.sleep(self.interval)

    def wait_for_change(self, since: float | None = None) -> None:
        if since is None:
            since = self.clock()
        if self.notify and self._wait_notify(since):
            return
        self._wait_poll(since)

    def wait_until_settled(self) -> None:
        while not self.settled(self.clock()):
            self.sleep(self.interval)

    def wait(self, since: float | None = None) -> None:
        """Wait for a change newer than `since` (default: now), then settle."""
        self.wait_for_change(since)
        self.wait_until_settled()
