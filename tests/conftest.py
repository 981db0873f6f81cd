"""Shared pytest fixtures: manual clock scheduler, fake camera processes, JPEG data."""

import itertools
import os
import subprocess
import sys
import threading
import time
from pathlib import Path

import cv2
import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fotobox.scheduler import ScheduledTask  # noqa: E402


# =============================================================================
# Scheduler with a manual clock
# =============================================================================

class ManualScheduler:
    """Same interface as fotobox.scheduler.Scheduler; time only moves on advance()."""

    def __init__(self):
        self.now = 0.0
        self._lock = threading.Lock()
        self._entries = []
        self._seq = itertools.count()

    def call_later(self, delay, callback, *args):
        task = ScheduledTask(callback, args)
        self._push(self.now + delay, task)
        return task

    def call_soon(self, callback, *args):
        return self.call_later(0, callback, *args)

    def call_every(self, interval, callback, *args):
        task = ScheduledTask(callback, args, interval=interval)
        self._push(self.now + interval, task)
        return task

    def shutdown(self):
        with self._lock:
            entries, self._entries = self._entries, []
        for _, _, task in entries:
            task.cancel()

    @property
    def pending(self):
        with self._lock:
            return [task for _, _, task in sorted(self._entries, key=lambda e: e[:2])
                    if not task.cancelled]

    def advance(self, seconds=0.0):
        target = self.now + seconds
        while True:
            with self._lock:
                due = [e for e in self._entries if e[0] <= target and not e[2].cancelled]
                if not due:
                    self._entries = [e for e in self._entries if not e[2].cancelled]
                    break
                entry = min(due, key=lambda e: e[:2])
                self._entries.remove(entry)
            when, _, task = entry
            self.now = max(self.now, when)
            # Let exceptions reach the test
            task.callback(*task.args)
            if task.interval is not None and not task.cancelled:
                self._push(self.now + task.interval, task)
        self.now = target

    def run_pending(self):
        self.advance(0)

    def _push(self, when, task):
        with self._lock:
            self._entries.append((when, next(self._seq), task))


@pytest.fixture
def scheduler():
    return ManualScheduler()


# =============================================================================
# Fake child processes
# =============================================================================

class FakeProcess:
    """Popen stand-in whose stdout/stderr are real pipes the test writes into."""

    _pids = itertools.count(1000)

    def __init__(self, args, **kwargs):
        self.args = args
        self.pid = next(self._pids)
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.ignore_sigterm = False
        self._exited = threading.Event()

        out_r, self._out_w = os.pipe()
        err_r, self._err_w = os.pipe()
        self.stdout = os.fdopen(out_r, "rb", buffering=0)
        self.stderr = os.fdopen(err_r, "rb", buffering=0)

    def write(self, data: bytes):
        os.write(self._out_w, data)

    def write_stderr(self, text: str):
        os.write(self._err_w, text.encode())

    def exit(self, code=0):
        if self._exited.is_set():
            return
        self.returncode = code
        os.close(self._out_w)
        os.close(self._err_w)
        self._exited.set()

    def terminate(self):
        self.terminated = True
        if not self.ignore_sigterm:
            self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode


class ProcessFactory:
    """Callable used in place of subprocess.Popen."""

    def __init__(self):
        self.spawned = []
        self.fail_with = None

    def __call__(self, args, **kwargs):
        if self.fail_with is not None:
            raise self.fail_with
        proc = FakeProcess(args, **kwargs)
        self.spawned.append(proc)
        return proc

    @property
    def latest(self) -> FakeProcess:
        return self.spawned[-1]


@pytest.fixture
def process_factory():
    factory = ProcessFactory()
    yield factory
    for proc in factory.spawned:
        proc.exit(0)


# =============================================================================
# Helpers
# =============================================================================

def wait_for(predicate, timeout=2.0, interval=0.005):
    """Poll until predicate() is true; reader threads need a moment."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_frame(payload: bytes = b"\x01\x02\x03") -> bytes:
    """Minimal SOI..EOI framed blob for demux tests."""
    return b"\xff\xd8" + payload + b"\xff\xd9"


@pytest.fixture
def jpeg_bytes() -> bytes:
    """A real 800x600 JPEG."""
    img = np.zeros((600, 800, 3), dtype=np.uint8)
    img[:, :400] = (0, 128, 255)
    ok, buffer = cv2.imencode(".jpg", img)
    assert ok
    return buffer.tobytes()
