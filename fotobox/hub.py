"""
Fan-out of preview frames to connected viewers.

The hub counts viewers that asked for preview and starts or stops the
supervisor accordingly. The capture coordinator pauses it while a still
photo is taken.
"""
import itertools
import logging
import threading
from dataclasses import dataclass

from .protocol import PreviewFrame, PreviewStatus
from .supervisor import SessionState

logger = logging.getLogger(__name__)

STATUS_FOR_STATE = {
    SessionState.IDLE: "paused",
    SessionState.STARTING: "starting",
    SessionState.STREAMING: "active",
    SessionState.COOLING_DOWN: "error",
    SessionState.FAILED: "error",
}


@dataclass
class StreamSubscriber:
    id: int
    connection: object  # anything with send(message)
    is_streaming: bool = False


class StreamHub:
    def __init__(self, supervisor, stop_timeout=3.0):
        self._supervisor = supervisor
        self.stop_timeout = stop_timeout
        self._lock = threading.Lock()
        self._subscribers = {}
        self._ids = itertools.count(1)
        self._paused = False
        self._pause_generation = 0
        supervisor.bind(
            on_frame=self.publish_frame,
            on_state_change=self.publish_state,
            has_demand=self.has_demand,
        )

    # ---- viewer lifecycle ----

    def connect(self, connection) -> int:
        with self._lock:
            sub = StreamSubscriber(next(self._ids), connection)
            self._subscribers[sub.id] = sub
            total = len(self._subscribers)
        logger.info("Viewer %d connected (%d total)", sub.id, total)
        return sub.id

    def disconnect(self, subscriber_id):
        with self._lock:
            sub = self._subscribers.pop(subscriber_id, None)
            idle = not self._any_streaming_locked()
        if sub is None:
            return
        logger.info("Viewer %d disconnected", subscriber_id)
        if sub.is_streaming and idle:
            self._supervisor.stop()

    def start_preview(self, subscriber_id):
        with self._lock:
            sub = self._subscribers.get(subscriber_id)
            if sub is None:
                return
            sub.is_streaming = True
            paused = self._paused
        if paused:
            self._send(sub, PreviewStatus("paused", "Capture in progress"))
            return
        state = self._supervisor.state
        if self._supervisor.is_running or state is SessionState.COOLING_DOWN:
            # Already streaming, or a restart is scheduled
            self._send(sub, PreviewStatus(STATUS_FOR_STATE[state]))
            return
        if not self._supervisor.start():
            self._send(sub, PreviewStatus("error", "Camera unavailable, try again later"))

    def stop_preview(self, subscriber_id):
        with self._lock:
            sub = self._subscribers.get(subscriber_id)
            if sub is None or not sub.is_streaming:
                return
            sub.is_streaming = False
            idle = not self._any_streaming_locked()
        self._send(sub, PreviewStatus("paused", "Preview stopped"))
        if idle:
            logger.info("Last viewer stopped preview")
            self._supervisor.stop()

    def has_active_subscribers(self) -> bool:
        with self._lock:
            return self._any_streaming_locked()

    def has_demand(self) -> bool:
        """Whether the supervisor should be running right now."""
        with self._lock:
            return not self._paused and self._any_streaming_locked()

    # ---- capture coordination ----

    def pause(self) -> int:
        """Stop the device for a still capture. Returns a token for resume()."""
        with self._lock:
            self._paused = True
            self._pause_generation += 1
            token = self._pause_generation
        self._broadcast(PreviewStatus("paused", "Taking photo"))
        self._supervisor.stop(timeout=self.stop_timeout)
        return token

    def resume(self, token):
        with self._lock:
            if token != self._pause_generation or not self._paused:
                return
            self._paused = False
            wanted = self._any_streaming_locked()
        if wanted:
            logger.info("Resuming preview after capture")
            self._supervisor.start()

    # ---- supervisor callbacks ----

    def publish_frame(self, frame):
        self._broadcast(PreviewFrame.from_jpeg(frame.data, frame.timestamp))

    def publish_state(self, state, message=""):
        status = STATUS_FOR_STATE[state]
        with self._lock:
            # Keep the capture message while paused
            if self._paused and status == "paused":
                return
        self._broadcast(PreviewStatus(status, message))

    # ---- helpers ----

    def _any_streaming_locked(self):
        return any(s.is_streaming for s in self._subscribers.values())

    def _broadcast(self, message):
        with self._lock:
            targets = [s for s in self._subscribers.values() if s.is_streaming]
        for sub in targets:
            self._send(sub, message)

    def _send(self, sub, message):
        try:
            sub.connection.send(message)
        except Exception as e:
            logger.warning("Send to viewer %d failed: %s", sub.id, e)
