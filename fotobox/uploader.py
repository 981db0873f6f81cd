"""
Durable upload queue for captured photos.

Every photo waiting for upload has one JSON file in the tracking directory;
the file exists until the home server confirms the upload. A periodic
status probe decides whether we are online, and coming back online drains
the queue.
"""
import contextlib
import dataclasses
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

import requests

from .errors import UploadError, UploadValidationError

logger = logging.getLogger(__name__)


@dataclass
class PendingUpload:
    photo_id: str
    photo_path: str
    thumbnail_path: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    timestamp: int = 0
    status: str = "pending"
    retries: int = 0
    last_error: Optional[str] = None

    def files_exist(self) -> bool:
        photo_ok = bool(self.photo_path) and os.path.exists(self.photo_path)
        thumb_ok = not self.thumbnail_path or os.path.exists(self.thumbnail_path)
        return photo_ok and thumb_ok

    def to_record(self) -> dict:
        return {
            "photoPath": self.photo_path,
            "thumbnailPath": self.thumbnail_path,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
            "status": self.status,
            "retries": self.retries,
            "lastError": self.last_error,
        }

    @classmethod
    def from_record(cls, photo_id, data):
        return cls(
            photo_id=photo_id,
            photo_path=data["photoPath"],
            thumbnail_path=data.get("thumbnailPath"),
            metadata=data.get("metadata") or {},
            timestamp=data.get("timestamp", 0),
            status=data.get("status", "pending"),
            retries=int(data.get("retries", 0)),
            last_error=data.get("lastError"),
        )


@dataclass(frozen=True)
class ConnectivityState:
    is_online: bool = False
    last_checked: Optional[float] = None


@dataclass(frozen=True)
class EnqueueResult:
    success: bool
    pending: bool
    photo_id: str
    photo_url: str
    message: str

    def to_dict(self):
        return {"success": self.success, "pending": self.pending, "photoId": self.photo_id,
                "photoUrl": self.photo_url, "message": self.message}


class PhotoUploader:
    def __init__(self, server_url, api_key, tracking_dir, scheduler, photo_view_url=None,
                 max_retries=5, retry_delay=30.0, check_interval=300.0, probe_timeout=5.0,
                 upload_timeout=30.0, session=None):
        self.server_url = server_url.rstrip("/")
        self.upload_endpoint = f"{self.server_url}/api/upload-photo"
        self.status_endpoint = f"{self.server_url}/api/status"
        self.photo_view_url = (photo_view_url or self.server_url).rstrip("/")
        self.api_key = api_key
        self.tracking_dir = tracking_dir
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.check_interval = check_interval
        self.probe_timeout = probe_timeout
        self.upload_timeout = upload_timeout
        self._scheduler = scheduler
        self._session = session or requests.Session()

        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._drain_requested = False
        self._records = {}
        self._connectivity = ConnectivityState()
        self._probe_task = None
        self._retry_task = None

        os.makedirs(tracking_dir, exist_ok=True)
        self._load_pending()

    # ---- queue ----

    def enqueue(self, photo_path, metadata, thumbnail_path=None) -> EnqueueResult:
        """Persist a photo for upload. Raises UploadValidationError if the file is missing."""
        photo_id = metadata.get("filename") or os.path.basename(photo_path)
        logger.info("Queueing photo for upload: %s", photo_id)

        if not os.path.exists(photo_path):
            logger.error("Photo file does not exist: %s", photo_path)
            raise UploadValidationError(f"Photo file does not exist: {photo_path}")

        record = PendingUpload(
            photo_id=photo_id,
            photo_path=photo_path,
            thumbnail_path=thumbnail_path,
            metadata=dict(metadata),
            timestamp=int(time.time() * 1000),
        )
        self._save(record)
        with self._lock:
            self._records[photo_id] = record
            online = self._connectivity.is_online

        if online:
            self._scheduler.call_soon(self.drain)
            message = "Photo upload started"
        else:
            logger.info("Offline mode - photo queued for later upload")
            message = "Photo queued for upload when connection is available"
        return EnqueueResult(True, True, photo_id, self.photo_url(photo_id), message)

    def photo_url(self, photo_id) -> str:
        """Where the photo will be viewable once uploaded."""
        return f"{self.photo_view_url}/photo/{photo_id}"

    def drain(self) -> bool:
        """
        Try to upload everything that is pending. Returns False if another
        pass was already running; that pass will go round again.
        """
        if not self._drain_lock.acquire(blocking=False):
            with self._lock:
                self._drain_requested = True
            logger.debug("Drain already in progress")
            return False
        # Records tried in this drain wait for the retry timer, not the next pass
        attempted = set()
        any_ran = False
        try:
            while True:
                with self._lock:
                    self._drain_requested = False
                ran = self._drain_pass(attempted)
                any_ran = any_ran or ran
                with self._lock:
                    again = self._drain_requested
                if not (ran and again):
                    break
        finally:
            self._drain_lock.release()

        if any_ran:
            self._schedule_retry()
        return True

    def _drain_pass(self, attempted):
        with self._lock:
            online = self._connectivity.is_online
            records = [r for r in self._records.values() if r.photo_id not in attempted]
        attempted.update(r.photo_id for r in records)
        if not records:
            return False
        if not online:
            logger.info("Offline, %d upload(s) waiting", len(records))
            return False

        logger.info("Processing upload queue (%d pending)", len(records))
        for record in records:
            if record.retries >= self.max_retries:
                logger.error("Upload of %s failed after %d attempts - giving up",
                             record.photo_id, record.retries)
                self._forget(record.photo_id)
                continue

            try:
                self._upload(record)
            except UploadValidationError as e:
                logger.error("Dropping upload of %s: %s", record.photo_id, e)
                self._forget(record.photo_id)
                continue
            except UploadError as e:
                failed = dataclasses.replace(record, retries=record.retries + 1,
                                             status="retrying", last_error=str(e))
                with self._lock:
                    if record.photo_id not in self._records:
                        continue
                    self._records[record.photo_id] = failed
                self._save(failed)
                logger.error("Upload failed for %s (attempt %d/%d): %s",
                             record.photo_id, failed.retries, self.max_retries, e)
                continue

            logger.info("Successfully uploaded %s", record.photo_id)
            self._forget(record.photo_id)
        return True

    def _schedule_retry(self):
        with self._lock:
            remaining = len(self._records)
            if self._retry_task is not None:
                self._retry_task.cancel()
                self._retry_task = None
            if remaining:
                self._retry_task = self._scheduler.call_later(self.retry_delay, self.drain)
        if remaining:
            logger.info("Scheduled retry in %ss for %d pending uploads", self.retry_delay, remaining)

    def _upload(self, record):
        if not os.path.exists(record.photo_path):
            raise UploadValidationError(f"Photo file does not exist: {record.photo_path}")

        logger.info("Uploading photo %s to %s", record.photo_id, self.upload_endpoint)
        with contextlib.ExitStack() as stack:
            files = {
                "photo": (os.path.basename(record.photo_path),
                          stack.enter_context(open(record.photo_path, "rb")), "image/jpeg"),
            }
            if record.thumbnail_path and os.path.exists(record.thumbnail_path):
                files["thumbnail"] = (os.path.basename(record.thumbnail_path),
                                      stack.enter_context(open(record.thumbnail_path, "rb")),
                                      "image/jpeg")
            try:
                response = self._session.post(
                    self.upload_endpoint,
                    files=files,
                    data={"metadata": json.dumps(record.metadata)},
                    headers={"X-API-Key": self.api_key},
                    timeout=self.upload_timeout,
                )
                response.raise_for_status()
            except requests.RequestException as e:
                raise UploadError(str(e)) from e

        try:
            body = response.json()
        except ValueError:
            return {}
        if isinstance(body, dict) and body.get("success") is False:
            raise UploadError(body.get("message") or body.get("error") or "Upload rejected by server")
        return body

    # ---- connectivity ----

    @property
    def connectivity(self) -> ConnectivityState:
        return self._connectivity

    @property
    def is_online(self) -> bool:
        return self._connectivity.is_online

    def start(self):
        """Probe now and then every check_interval seconds."""
        with self._lock:
            if self._probe_task is not None:
                return
            self._probe_task = self._scheduler.call_every(self.check_interval, self.check_connectivity)
        self._scheduler.call_soon(self.check_connectivity)
        logger.info("Connection checker started")

    def request_connectivity_check(self):
        """Out-of-cycle probe, e.g. after the OS reports a network change."""
        self._scheduler.call_soon(self.check_connectivity)

    def check_connectivity(self) -> bool:
        try:
            response = self._session.get(self.status_endpoint, timeout=self.probe_timeout)
            online = response.status_code == 200
        except requests.RequestException as e:
            logger.warning("Connection check failed: %s", e)
            online = False

        with self._lock:
            was_online = self._connectivity.is_online
            self._connectivity = ConnectivityState(online, time.time())

        if online != was_online:
            logger.info("Connection status: %s", "ONLINE" if online else "OFFLINE")
        if online and not was_online:
            logger.info("Connection restored! Starting upload of pending photos")
            self._scheduler.call_soon(self.drain)
        return online

    # ---- inspection ----

    def get_upload_status(self, photo_id):
        with self._lock:
            record = self._records.get(photo_id)
        if record is None:
            return None
        return dict(record.to_record(), photoId=photo_id)

    def get_all_pending(self):
        with self._lock:
            records = list(self._records.values())
        return [dict(r.to_record(), photoId=r.photo_id) for r in records]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._records)

    def shutdown(self):
        with self._lock:
            tasks = [self._probe_task, self._retry_task]
            self._probe_task = self._retry_task = None
        for task in tasks:
            if task is not None:
                task.cancel()
        logger.info("Photo uploader shutdown")

    # ---- persistence ----

    def _record_path(self, photo_id):
        return os.path.join(self.tracking_dir, f"{os.path.basename(photo_id)}.json")

    def _save(self, record):
        path = self._record_path(record.photo_id)
        tmp = path + ".tmp"
        try:
            with open(tmp, "w") as f:
                json.dump(record.to_record(), f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            logger.error("Error saving upload info for %s: %s", record.photo_id, e)

    def _forget(self, photo_id):
        with self._lock:
            self._records.pop(photo_id, None)
        try:
            os.remove(self._record_path(photo_id))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Error removing upload info for %s: %s", photo_id, e)

    def _load_pending(self):
        for name in sorted(os.listdir(self.tracking_dir)):
            if not name.endswith(".json"):
                continue
            path = os.path.join(self.tracking_dir, name)
            photo_id = name[:-len(".json")]
            try:
                with open(path) as f:
                    record = PendingUpload.from_record(photo_id, json.load(f))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error("Error loading pending upload %s: %s", name, e)
                continue

            if record.files_exist():
                self._records[photo_id] = record
                logger.info("Loaded pending upload: %s", photo_id)
            else:
                logger.warning("Removed tracking for missing files: %s", name)
                try:
                    os.remove(path)
                except OSError as e:
                    logger.error("Error removing stale record %s: %s", name, e)

        logger.info("Loaded %d pending uploads", len(self._records))
        if self._records:
            self._scheduler.call_soon(self.drain)
