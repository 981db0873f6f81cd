"""
Carve JPEG frames out of a continuous MJPEG byte stream.
"""
import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SOI = b"\xff\xd8"  # Start Of Image
EOI = b"\xff\xd9"  # End Of Image
MAX_BUFFER_SIZE = 5 * 1024 * 1024


@dataclass(frozen=True)
class Frame:
    data: bytes
    timestamp: float
    sequence: int


class FrameDemuxer:
    """
    Accumulate arbitrary chunks and emit every complete SOI..EOI range.

    Chunk boundaries never need to line up with frame boundaries; whatever
    is left after the last complete frame stays buffered for the next feed.
    """

    def __init__(self, max_buffer_size=MAX_BUFFER_SIZE):
        self.max_buffer_size = max_buffer_size
        self._buf = bytearray()
        self._sequence = 0

    @property
    def buffered(self) -> bytes:
        return bytes(self._buf)

    def reset(self):
        """Forget any partial frame left over from a previous stream."""
        self._buf.clear()

    def feed(self, chunk: bytes) -> list:
        buf = self._buf
        buf.extend(chunk)
        frames = []

        # Find complete JPEGs in the buffer
        while True:
            start = buf.find(SOI)
            if start < 0:
                break
            end = buf.find(EOI, start + 2)
            if end < 0:
                # Incomplete JPEG; need more bytes
                break

            frames.append(Frame(bytes(buf[start:end + 2]), time.time(), self._sequence))
            self._sequence += 1
            # Drop everything up to the end of this JPEG
            del buf[:end + 2]

        if len(buf) > self.max_buffer_size:
            logger.warning("Demux buffer exceeded %d bytes without a complete frame, discarding",
                           self.max_buffer_size)
            buf.clear()

        return frames
