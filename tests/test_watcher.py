import os
import sys
import threading
import time

import pytest

from remtex_core.watcher import ChangeWatcher


class FakeClock:
    def __init__(self, now: float):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, dt: float) -> None:
        self.sleeps.append(dt)
        self.now += dt


class Stop(Exception):
    pass


def touch(p, t):
    p.write_text("x")
    os.utime(p, (t, t))


def test_settled_predicate_on_fake_clock(tmp_path):
    f = tmp_path / "doc.tex"
    touch(f, 1000.0)
    w = ChangeWatcher([f], interval=0.5, notify=False)
    assert not w.settled(1000.2)
    assert w.settled(1000.6)


def test_settle_waits_one_interval(tmp_path):
    f = tmp_path / "doc.tex"
    touch(f, 1000.0)
    clock = FakeClock(1000.0)
    w = ChangeWatcher([f], interval=0.25, clock=clock, sleep=clock.sleep, notify=False)
    w.wait_until_settled()
    assert clock.sleeps == [0.25]


def test_vanished_file_does_not_block(tmp_path):
    f = tmp_path / "doc.tex"
    touch(f, 1000.0)
    w = ChangeWatcher([f, tmp_path / "gone.tex"], interval=0.25, notify=False)
    assert w.settled(1001.0)
    assert not w.changed_since(1000.0)
    assert w.changed_since(999.0)


def test_poll_detects_change_after_since(tmp_path):
    f = tmp_path / "doc.tex"
    touch(f, 1001.0)
    clock = FakeClock(1001.0)
    w = ChangeWatcher([f], interval=0.25, clock=clock, sleep=clock.sleep, notify=False)
    w.wait(since=1000.0)
    # One settle interval, no detection sleeps.
    assert clock.sleeps == [0.25]


def test_untouched_file_never_returns(tmp_path):
    f = tmp_path / "doc.tex"
    touch(f, 1000.0)
    calls = []

    def sleep(dt):
        calls.append(dt)
        if len(calls) >= 3:
            raise Stop()

    w = ChangeWatcher([f], interval=0.25, clock=lambda: 2000.0, sleep=sleep, notify=False)
    with pytest.raises(Stop):
        w.wait_for_change()
    assert len(calls) == 3


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify only")
def test_notify_honours_earlier_change(tmp_path):
    f = tmp_path / "doc.tex"
    touch(f, 1001.0)
    w = ChangeWatcher([f], interval=0.25, notify=True)
    w.wait_for_change(since=1000.0)


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify only")
def test_notify_fires_on_write_close(tmp_path):
    f = tmp_path / "doc.tex"
    touch(f, 1000.0)
    w = ChangeWatcher([f], interval=0.25, notify=True)
    t = threading.Thread(target=w.wait_for_change, kwargs={"since": 1000.0}, daemon=True)
    t.start()
    time.sleep(0.5)
    with open(f, "a") as fh:
        fh.write("more")
    t.join(10.0)
    assert not t.is_alive()
