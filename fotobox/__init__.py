"""FotoBox camera server: live preview, photo capture and offline-tolerant upload."""

__version__ = "0.1.0"
