"""
Cancellable delayed and periodic callbacks.

Retry, cooldown and probe timers all go through a Scheduler so tests can
swap in a manual clock instead of waiting on real timers.
"""
import logging
import threading

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for a pending callback. Cancelling is idempotent."""

    def __init__(self, callback, args=(), interval=None):
        self.callback = callback
        self.args = args
        self.interval = interval
        self._cancelled = threading.Event()
        self._timer = None

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def cancel(self):
        self._cancelled.set()
        timer = self._timer
        if timer is not None:
            timer.cancel()

    def run(self):
        if self.cancelled:
            return
        try:
            self.callback(*self.args)
        except Exception:
            logger.exception("Scheduled callback %r failed", self.callback)


class Scheduler:
    """Thread-timer backed scheduler."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tasks = set()
        self._closed = False

    def call_later(self, delay, callback, *args):
        task = ScheduledTask(callback, args)
        self._arm(task, delay)
        return task

    def call_soon(self, callback, *args):
        return self.call_later(0, callback, *args)

    def call_every(self, interval, callback, *args):
        task = ScheduledTask(callback, args, interval=interval)
        self._arm(task, interval)
        return task

    def shutdown(self):
        with self._lock:
            self._closed = True
            tasks = list(self._tasks)
            self._tasks.clear()
        for task in tasks:
            task.cancel()

    def _arm(self, task, delay):
        with self._lock:
            if self._closed or task.cancelled:
                return
            timer = threading.Timer(max(delay, 0), self._fire, args=(task,))
            timer.daemon = True
            task._timer = timer
            self._tasks.add(task)
        timer.start()

    def _fire(self, task):
        with self._lock:
            self._tasks.discard(task)
        task.run()
        if task.interval is not None and not task.cancelled:
            self._arm(task, task.interval)
