"""
Owns the continuous preview process (MJPEG to stdout) and restarts it when
the camera falls over.

State machine:
    IDLE -> STARTING -> STREAMING -> IDLE (stop) | COOLING_DOWN (failure)
    COOLING_DOWN -> STARTING (retry) | FAILED (retries exhausted)
    FAILED -> IDLE (reset_retries)
"""
import enum
import logging
import subprocess
import threading

from .demux import FrameDemuxer

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COOLING_DOWN = "cooling_down"
    FAILED = "failed"


class CaptureSession:
    """One running preview process."""

    def __init__(self, proc):
        self.proc = proc
        self.streaming = False
        # Set once this process has been counted as a failure
        self.failed = False


class CaptureSupervisor:
    def __init__(self, command, scheduler, demuxer=None, max_retries=3, cooldown=5.0,
                 reset_window=60.0, fatal_patterns=("device busy",), stop_timeout=3.0,
                 chunk_size=65536, popen=subprocess.Popen):
        self.command = list(command)
        self.max_retries = max_retries
        self.cooldown = cooldown
        self.reset_window = reset_window
        self.fatal_patterns = tuple(p.lower() for p in fatal_patterns)
        self.stop_timeout = stop_timeout
        self.chunk_size = chunk_size
        self._scheduler = scheduler
        self._demuxer = demuxer or FrameDemuxer()
        self._popen = popen

        self._lock = threading.Lock()
        self._demux_lock = threading.Lock()
        self._notify_lock = threading.RLock()
        self._session = None
        self._state = SessionState.IDLE
        self._retries = 0
        self._stopping = False
        self._restart_task = None
        self._reset_task = None
        self._notes = []

        self._on_frame = None
        self._on_state_change = None
        self._has_demand = lambda: False

    def bind(self, on_frame=None, on_state_change=None, has_demand=None):
        """Attach the consumer of frames and state transitions."""
        if on_frame is not None:
            self._on_frame = on_frame
        if on_state_change is not None:
            self._on_state_change = on_state_change
        if has_demand is not None:
            self._has_demand = has_demand

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._session is not None and not self._stopping

    def status(self):
        with self._lock:
            pid = self._session.proc.pid if self._session is not None else None
            return {"state": self._state.value, "retries": self._retries,
                    "max_retries": self.max_retries, "pid": pid}

    # ---- public operations ----

    def start(self) -> bool:
        """Spawn the preview process. Returns False if the retry budget is spent."""
        with self._lock:
            started = self._start_locked()
        self._flush()
        return started

    def stop(self, timeout=None):
        """
        Ask the preview process to exit with SIGTERM.

        With a timeout, wait for it to go away and escalate to SIGKILL if it
        does not; the handle is cleared before returning. Without one, the
        handle is cleared when the reader sees the process exit.
        """
        with self._lock:
            self._cancel_restart_locked()
            session = self._session
            if session is None:
                if self._state in (SessionState.STARTING, SessionState.STREAMING,
                                   SessionState.COOLING_DOWN):
                    self._set_state(SessionState.IDLE, "Preview stopped")
            else:
                self._stopping = True
        self._flush()
        if session is None:
            return

        logger.info("Stopping preview process (pid %s)", session.proc.pid)
        self._terminate(session.proc, timeout)

        if timeout is not None:
            with self._lock:
                if self._session is session:
                    self._session = None
                    self._stopping = False
                    self._set_state(SessionState.IDLE, "Preview stopped")
            self._flush()

    def reset_retries(self):
        with self._lock:
            self._retries = 0
            if self._reset_task is not None:
                self._reset_task.cancel()
                self._reset_task = None
            idle = self._session is None
            if idle and self._state is SessionState.FAILED:
                self._set_state(SessionState.IDLE, "Camera retry counter reset")
        self._flush()
        logger.info("Camera retry counter reset")
        if idle and self._has_demand():
            self.start()

    # ---- internals ----

    def _start_locked(self):
        if self._session is not None:
            return True
        if self._retries >= self.max_retries:
            logger.warning("Refusing to start preview: %d/%d retries used",
                           self._retries, self.max_retries)
            self._set_state(SessionState.FAILED,
                            f"Camera unavailable after {self._retries} attempts")
            self._schedule_reset_locked()
            return False

        self._cancel_restart_locked()
        self._set_state(SessionState.STARTING, "Starting camera preview")
        with self._demux_lock:
            self._demuxer.reset()
        logger.info("Starting preview: %s", " ".join(self.command))
        try:
            # Use Popen so we can read stdout as the stream flows
            proc = self._popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as e:
            logger.error("Failed to spawn preview process: %s", e)
            self._record_failure_locked(f"Failed to start camera: {e}")
            return self._state is not SessionState.FAILED

        session = CaptureSession(proc)
        self._session = session
        self._stopping = False
        threading.Thread(target=self._pump_stdout, args=(session,), daemon=True,
                         name="preview-stdout").start()
        threading.Thread(target=self._watch_stderr, args=(session,), daemon=True,
                         name="preview-stderr").start()
        return True

    def _record_failure_locked(self, reason):
        self._retries += 1
        if self._retries < self.max_retries:
            logger.warning("%s (attempt %d/%d), restarting in %ss",
                           reason, self._retries, self.max_retries, self.cooldown)
            self._set_state(SessionState.COOLING_DOWN,
                            f"{reason}, retrying in {self.cooldown:g}s")
            self._cancel_restart_locked()
            self._restart_task = self._scheduler.call_later(self.cooldown, self._restart)
        else:
            logger.error("%s, giving up after %d attempts", reason, self._retries)
            self._set_state(SessionState.FAILED, f"{reason}, giving up")
            self._schedule_reset_locked()

    def _schedule_reset_locked(self):
        if self._reset_task is None:
            self._reset_task = self._scheduler.call_later(self.reset_window, self._auto_reset)

    def _cancel_restart_locked(self):
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None

    def _restart(self):
        with self._lock:
            self._restart_task = None
            session = self._session
            if session is not None:
                if session.failed:
                    # Old process still on its way out
                    self._restart_task = self._scheduler.call_later(self.cooldown, self._restart)
                return
        if self._has_demand():
            self.start()
            return
        with self._lock:
            if self._session is None and self._state is SessionState.COOLING_DOWN:
                self._set_state(SessionState.IDLE, "No viewers, not restarting")
        self._flush()

    def _auto_reset(self):
        with self._lock:
            self._reset_task = None
        self.reset_retries()

    def _pump_stdout(self, session):
        proc = session.proc
        try:
            for chunk in iter(lambda: proc.stdout.read(self.chunk_size), b""):
                self._on_chunk(session, chunk)
        except (OSError, ValueError) as e:
            logger.warning("Preview stdout read failed: %s", e)
        code = proc.wait()
        self._on_exit(session, code)

    def _on_chunk(self, session, chunk):
        if not session.streaming:
            session.streaming = True
            with self._lock:
                if self._session is session and self._state is SessionState.STARTING:
                    self._set_state(SessionState.STREAMING, "Preview active")
            self._flush()

        with self._demux_lock:
            if self._session is not session or session.failed:
                return
            frames = self._demuxer.feed(chunk)
            if self._on_frame is not None:
                for frame in frames:
                    self._on_frame(frame)

    def _watch_stderr(self, session):
        proc = session.proc
        try:
            for raw in iter(proc.stderr.readline, b""):
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                if any(p in line.lower() for p in self.fatal_patterns):
                    self._on_device_busy(session, line)
                else:
                    logger.debug("preview: %s", line)
        except (OSError, ValueError) as e:
            logger.debug("Preview stderr closed: %s", e)

    def _on_device_busy(self, session, line):
        with self._lock:
            if self._session is not session or session.failed or self._stopping:
                return
            session.failed = True
            logger.error("Camera reported busy: %s", line)
            self._record_failure_locked("Camera busy")
        self._flush()
        self._terminate(session.proc, self.stop_timeout)

    def _on_exit(self, session, code):
        restart = False
        with self._lock:
            if self._session is not session:
                return
            self._session = None
            if self._stopping:
                self._stopping = False
                self._set_state(SessionState.IDLE, "Preview stopped")
                restart = True
            elif session.failed:
                pass
            elif code == 0:
                logger.info("Preview process exited cleanly")
                self._set_state(SessionState.IDLE, "Preview stopped")
            else:
                session.failed = True
                self._record_failure_locked(f"Preview process exited with code {code}")
        self._flush()
        # A viewer may have asked for preview while the old process was exiting
        if restart and self._has_demand():
            self.start()

    def _terminate(self, proc, timeout):
        try:
            proc.terminate()
        except OSError as e:
            logger.warning("Could not signal preview process: %s", e)
            return
        if timeout is None:
            return
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Preview process ignored SIGTERM for %ss, killing", timeout)
            try:
                proc.kill()
            except OSError as e:
                logger.warning("Could not kill preview process: %s", e)
                return
            proc.wait()

    def _set_state(self, state, message=""):
        # Caller holds self._lock
        if state is self._state:
            return
        self._state = state
        self._notes.append((state, message))

    def _flush(self):
        with self._notify_lock:
            with self._lock:
                notes, self._notes = self._notes, []
            callback = self._on_state_change
            if callback is None:
                return
            for state, message in notes:
                callback(state, message)
