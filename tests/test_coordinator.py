"""Tests for single-flight photo capture."""

import os
import subprocess
import threading
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from conftest import make_frame, wait_for
from fotobox.coordinator import CaptureCoordinator
from fotobox.errors import CaptureInProgress, DeviceUnavailable, UploadValidationError
from fotobox.hub import StreamHub
from fotobox.protocol import PreviewStatus
from fotobox.supervisor import CaptureSupervisor, SessionState
from fotobox.uploader import EnqueueResult

FIXED_TIME = datetime(2024, 5, 1, 12, 30, 45, 123456)
FIXED_NAME = "photo_2024-05-01T12-30-45-123456.jpg"


class FakeCamera:
    """Stands in for subprocess.run; writes a JPEG to the {path} argument."""

    def __init__(self, jpeg, outcomes=None):
        self.jpeg = jpeg
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.gate = None

    def __call__(self, cmd, capture_output=False, timeout=None):
        self.calls.append(cmd)
        if self.gate is not None:
            self.gate.wait(2.0)
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "ok":
            with open(cmd[-1], "wb") as f:
                f.write(self.jpeg)
            return subprocess.CompletedProcess(cmd, 0, b"", b"")
        return subprocess.CompletedProcess(cmd, 1, b"", b"*** Error: No camera found\n")


class Viewer:
    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)


@pytest.fixture
def dirs(tmp_path):
    paths = {name: tmp_path / name for name in ("photos", "qrcodes", "thumbnails")}
    for path in paths.values():
        path.mkdir()
    return paths


@pytest.fixture
def supervisor(scheduler, process_factory):
    return CaptureSupervisor(["preview"], scheduler, stop_timeout=0.5, popen=process_factory)


@pytest.fixture
def hub(supervisor):
    return StreamHub(supervisor, stop_timeout=0.5)


@pytest.fixture
def uploader():
    mock = MagicMock()
    mock.photo_url.side_effect = lambda photo_id: f"https://photos.example/photo/{photo_id}"
    mock.enqueue.side_effect = lambda path, metadata, thumb=None: EnqueueResult(
        True, True, metadata["filename"], f"https://photos.example/photo/{metadata['filename']}",
        "Photo queued for upload when connection is available")
    return mock


@pytest.fixture
def camera(jpeg_bytes):
    return FakeCamera(jpeg_bytes)


@pytest.fixture
def coordinator(hub, uploader, scheduler, dirs, camera):
    return CaptureCoordinator(
        hub, uploader, scheduler,
        photos_dir=str(dirs["photos"]),
        qr_dir=str(dirs["qrcodes"]),
        thumbnail_dir=str(dirs["thumbnails"]),
        capture_command=["snap", "--filename", "{path}"],
        fallback_command=["still", "-o", "{path}"],
        stabilization_delay=1.0,
        run=camera,
        clock=lambda: FIXED_TIME,
    )


@pytest.fixture
def watching(hub, supervisor, process_factory):
    """A viewer with preview running."""
    viewer = Viewer()
    hub.start_preview(hub.connect(viewer))
    process_factory.latest.write(make_frame())
    assert wait_for(lambda: supervisor.state is SessionState.STREAMING)
    return viewer


class TestCapture:

    def test_photo_is_saved_and_queued(self, coordinator, camera, uploader, dirs):
        result = coordinator.capture_photo()

        assert result.filename == FIXED_NAME
        assert os.path.exists(result.photo_path)
        assert camera.calls == [["snap", "--filename", result.photo_path]]

        meta = result.metadata
        assert meta["filename"] == FIXED_NAME
        assert meta["url"] == f"/photos/{FIXED_NAME}"
        assert meta["photoViewUrl"] == f"https://photos.example/photo/{FIXED_NAME}"
        assert meta["qrUrl"] == "/qrcodes/qr_photo_2024-05-01T12-30-45-123456.png"
        assert meta["thumbnailUrl"] == "/photos/thumbnails/thumb_photo_2024-05-01T12-30-45-123456.jpg"
        assert (dirs["qrcodes"] / "qr_photo_2024-05-01T12-30-45-123456.png").exists()
        thumb = dirs["thumbnails"] / "thumb_photo_2024-05-01T12-30-45-123456.jpg"
        assert thumb.exists()

        uploader.enqueue.assert_called_once_with(result.photo_path, meta, str(thumb))
        body = result.to_dict()
        assert body["success"] is True
        assert body["upload"]["photoId"] == FIXED_NAME

    def test_same_timestamp_gets_suffix(self, coordinator):
        first = coordinator.capture_photo()
        second = coordinator.capture_photo()
        assert first.filename == FIXED_NAME
        assert second.filename == "photo_2024-05-01T12-30-45-123456_1.jpg"

    def test_fallback_used_when_primary_missing(self, coordinator, camera):
        camera.outcomes = [FileNotFoundError("snap"), "ok"]
        result = coordinator.capture_photo()
        assert [c[0] for c in camera.calls] == ["snap", "still"]
        assert os.path.exists(result.photo_path)

    def test_fallback_used_after_timeout(self, coordinator, camera):
        camera.outcomes = [subprocess.TimeoutExpired("snap", 30), "ok"]
        coordinator.capture_photo()
        assert len(camera.calls) == 2

    def test_both_commands_failing(self, coordinator, camera, uploader):
        camera.outcomes = ["fail", "fail"]
        with pytest.raises(DeviceUnavailable) as exc:
            coordinator.capture_photo()
        assert "No camera found" in str(exc.value)
        assert not coordinator.in_flight
        uploader.enqueue.assert_not_called()

        # The next request is accepted again
        coordinator.capture_photo()

    def test_upload_validation_error_still_returns_photo(self, coordinator, uploader):
        uploader.enqueue.side_effect = UploadValidationError("gone")
        result = coordinator.capture_photo()
        assert result.upload is None
        assert result.to_dict()["upload"] is None


class TestSingleFlight:

    def test_concurrent_capture_is_rejected(self, coordinator, camera):
        camera.gate = threading.Event()
        results = []
        worker = threading.Thread(target=lambda: results.append(coordinator.capture_photo()))
        worker.start()
        try:
            assert wait_for(lambda: len(camera.calls) == 1)
            assert coordinator.in_flight
            with pytest.raises(CaptureInProgress):
                coordinator.capture_photo()
        finally:
            camera.gate.set()
            worker.join(2.0)

        assert len(results) == 1
        assert len(camera.calls) == 1
        assert not coordinator.in_flight


class TestPreviewInterplay:

    def test_preview_paused_then_resumed_after_delay(self, coordinator, watching,
                                                     process_factory, scheduler, supervisor):
        first = process_factory.latest
        coordinator.capture_photo()

        assert first.terminated
        assert supervisor.state is SessionState.IDLE
        assert PreviewStatus("paused", "Taking photo") in watching.messages

        scheduler.advance(0.5)
        assert len(process_factory.spawned) == 1
        scheduler.advance(0.5)
        assert len(process_factory.spawned) == 2
        assert supervisor.is_running

    def test_preview_resumes_after_failed_capture(self, coordinator, watching, camera,
                                                  process_factory, scheduler):
        camera.outcomes = ["fail", "fail"]
        with pytest.raises(DeviceUnavailable):
            coordinator.capture_photo()
        scheduler.advance(1.0)
        assert len(process_factory.spawned) == 2

    def test_back_to_back_captures_resume_once(self, coordinator, watching,
                                               process_factory, scheduler):
        coordinator.capture_photo()
        coordinator.capture_photo()
        assert len(scheduler.pending) == 1

        scheduler.advance(1.0)
        assert len(process_factory.spawned) == 2

    def test_no_viewers_means_no_delay(self, coordinator, hub, process_factory, scheduler):
        coordinator.capture_photo()
        assert scheduler.pending == []

        # Preview is immediately available again
        hub.start_preview(hub.connect(Viewer()))
        assert len(process_factory.spawned) == 1

    def test_viewer_joining_mid_capture_is_told_to_wait(self, coordinator, hub, camera,
                                                        process_factory):
        camera.gate = threading.Event()
        worker = threading.Thread(target=coordinator.capture_photo)
        worker.start()
        try:
            assert wait_for(lambda: len(camera.calls) == 1)
            viewer = Viewer()
            hub.start_preview(hub.connect(viewer))
            assert viewer.messages == [PreviewStatus("paused", "Capture in progress")]
            assert process_factory.spawned == []
        finally:
            camera.gate.set()
            worker.join(2.0)
