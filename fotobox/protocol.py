"""
Viewer websocket messages. JSON objects with a "type" discriminator.

client -> server: startPreview, stopPreview, ping
server -> client: info, pong, previewStatus, previewFrame
"""
import base64
import json
import time
from dataclasses import dataclass, field
from typing import Optional, Union

from .errors import FotoboxError


class ProtocolError(FotoboxError):
    """A viewer sent something that is not a valid client message."""


# ---- client -> server ----

@dataclass(frozen=True)
class StartPreview:
    pass


@dataclass(frozen=True)
class StopPreview:
    pass


@dataclass(frozen=True)
class Ping:
    timestamp: Optional[float] = None


ClientMessage = Union[StartPreview, StopPreview, Ping]

# Older UI builds still send startStream/stopStream
_CLIENT_TYPES = {
    "startPreview": StartPreview,
    "startStream": StartPreview,
    "stopPreview": StopPreview,
    "stopStream": StopPreview,
}


def decode_client_message(text) -> ClientMessage:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    kind = data.get("type")
    if kind == "ping":
        return Ping(data.get("timestamp"))
    try:
        return _CLIENT_TYPES[kind]()
    except (KeyError, TypeError):
        raise ProtocolError(f"Unknown message type: {kind!r}") from None


# ---- server -> client ----

@dataclass(frozen=True)
class Info:
    message: str

    def to_json(self):
        return json.dumps({"type": "info", "message": self.message})


@dataclass(frozen=True)
class Pong:
    timestamp: Optional[float] = None

    def to_json(self):
        return json.dumps({"type": "pong", "timestamp": self.timestamp})


@dataclass(frozen=True)
class PreviewStatus:
    status: str  # starting | active | paused | error
    message: str = ""

    def to_json(self):
        return json.dumps({"type": "previewStatus", "status": self.status,
                           "message": self.message})


@dataclass(frozen=True)
class PreviewFrame:
    image_data: str  # base64 JPEG
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_jpeg(cls, jpg: bytes, timestamp: float):
        return cls(base64.b64encode(jpg).decode(), timestamp)

    def to_json(self):
        # JS clients expect milliseconds
        return json.dumps({"type": "previewFrame", "imageData": self.image_data,
                           "timestamp": int(self.timestamp * 1000)})


ServerMessage = Union[Info, Pong, PreviewStatus, PreviewFrame]
