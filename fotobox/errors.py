"""Exceptions raised across the camera server."""


class FotoboxError(Exception):
    """Base class for all FotoBox errors."""


class DeviceUnavailable(FotoboxError):
    """No capture mechanism could produce an image."""


class CaptureInProgress(FotoboxError):
    """Another capture is already running."""

    def __init__(self, message="A capture is already in progress"):
        super().__init__(message)


class UploadError(FotoboxError):
    """A transient upload failure (network, timeout, rejected by the server)."""


class UploadValidationError(FotoboxError):
    """The photo to upload is missing on local disk."""
