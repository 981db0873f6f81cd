"""
Single-flight still capture.

The camera cannot stream preview and take a still at the same time, so a
capture pauses the hub (stopping the preview process), runs the one-shot
capture command, and resumes preview after a short settle delay.
"""
import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from . import imaging
from .errors import CaptureInProgress, DeviceUnavailable, UploadValidationError
from .uploader import EnqueueResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureResult:
    filename: str
    photo_path: str
    metadata: dict
    upload: Optional[EnqueueResult] = None

    def to_dict(self):
        return {
            "success": True,
            "photo": self.metadata,
            "upload": self.upload.to_dict() if self.upload else None,
        }


class CaptureCoordinator:
    def __init__(self, hub, uploader, scheduler, photos_dir, qr_dir, thumbnail_dir,
                 capture_command, fallback_command=None, stabilization_delay=1.0,
                 capture_timeout=30.0, prefix="photo", thumbnail_width=400,
                 qr_scale=8, qr_margin=1, run=subprocess.run, clock=datetime.now):
        self._hub = hub
        self._uploader = uploader
        self._scheduler = scheduler
        self.photos_dir = photos_dir
        self.qr_dir = qr_dir
        self.thumbnail_dir = thumbnail_dir
        self.capture_command = list(capture_command)
        self.fallback_command = list(fallback_command) if fallback_command else None
        self.stabilization_delay = stabilization_delay
        self.capture_timeout = capture_timeout
        self.prefix = prefix
        self.thumbnail_width = thumbnail_width
        self.qr_scale = qr_scale
        self.qr_margin = qr_margin
        self._run = run
        self._clock = clock

        self._lock = threading.Lock()
        self._in_flight = False
        self._resume_task = None

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    def capture_photo(self) -> CaptureResult:
        """
        Take one photo and queue it for upload.

        Raises CaptureInProgress if another capture is running and
        DeviceUnavailable if neither capture command produced a file.
        """
        with self._lock:
            if self._in_flight:
                raise CaptureInProgress()
            self._in_flight = True
            if self._resume_task is not None:
                self._resume_task.cancel()
                self._resume_task = None

        was_active = False
        token = None
        try:
            was_active = self._hub.has_active_subscribers()
            token = self._hub.pause()
            filename, path = self._next_photo_path()
            self._run_capture(path)
            return self._finish(filename, path)
        finally:
            resume_now = False
            with self._lock:
                self._in_flight = False
                if token is not None:
                    if was_active:
                        self._resume_task = self._scheduler.call_later(
                            self.stabilization_delay, self._hub.resume, token)
                    else:
                        resume_now = True
            if resume_now:
                self._hub.resume(token)

    def _next_photo_path(self):
        stamp = self._clock().strftime("%Y-%m-%dT%H-%M-%S-%f")
        filename = f"{self.prefix}_{stamp}.jpg"
        n = 1
        while os.path.exists(os.path.join(self.photos_dir, filename)):
            filename = f"{self.prefix}_{stamp}_{n}.jpg"
            n += 1
        return filename, os.path.join(self.photos_dir, filename)

    def _run_capture(self, path):
        attempts = [("primary", self.capture_command)]
        if self.fallback_command:
            attempts.append(("fallback", self.fallback_command))

        errors = []
        for label, template in attempts:
            cmd = [part.replace("{path}", path) for part in template]
            logger.info("Executing %s capture: %s", label, " ".join(cmd))
            try:
                result = self._run(cmd, capture_output=True, timeout=self.capture_timeout)
            except subprocess.TimeoutExpired:
                logger.error("%s capture timed out after %ss", label, self.capture_timeout)
                errors.append(f"{cmd[0]} timed out")
                continue
            except OSError as e:
                logger.error("%s capture could not run: %s", label, e)
                errors.append(f"{cmd[0]}: {e}")
                continue

            if result.returncode == 0 and os.path.exists(path):
                logger.info("Photo saved: %s", path)
                return
            stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
            reason = stderr or f"exit code {result.returncode}"
            logger.error("%s capture failed: %s", label, reason)
            errors.append(f"{cmd[0]}: {reason}")

        raise DeviceUnavailable("Failed to capture photo: " + "; ".join(errors))

    def _finish(self, filename, path):
        stem = os.path.splitext(filename)[0]
        view_url = self._uploader.photo_url(filename)

        thumb_path = os.path.join(self.thumbnail_dir, f"thumb_{stem}.jpg")
        try:
            imaging.make_thumbnail(path, thumb_path, self.thumbnail_width)
        except Exception as e:
            logger.warning("Error generating thumbnail for %s: %s", filename, e)
            thumb_path = None

        qr_name = f"qr_{stem}.png"
        qr_url = f"/qrcodes/{qr_name}"
        try:
            imaging.write_qr_code(view_url, os.path.join(self.qr_dir, qr_name),
                                  self.qr_scale, self.qr_margin)
        except Exception as e:
            logger.warning("Error generating QR code for %s: %s", filename, e)
            qr_url = None

        metadata = {
            "filename": filename,
            "photoId": filename,
            "timestamp": int(time.time() * 1000),
            "url": f"/photos/{filename}",
            "qrUrl": qr_url,
            "thumbnailUrl": f"/photos/thumbnails/{os.path.basename(thumb_path)}" if thumb_path else None,
            "photoViewUrl": view_url,
        }

        upload = None
        try:
            upload = self._uploader.enqueue(path, metadata, thumb_path)
        except UploadValidationError as e:
            logger.error("Could not queue %s for upload: %s", filename, e)
        return CaptureResult(filename, path, metadata, upload)
