"""
FotoBox camera server: live preview over websockets, photo capture and
upload status over HTTP.
"""
import argparse
import asyncio
import logging
import os
import threading

import websockets
from flask import Flask, jsonify
from flask_cors import CORS

from . import config
from .coordinator import CaptureCoordinator
from .demux import FrameDemuxer
from .errors import CaptureInProgress, DeviceUnavailable
from .hub import StreamHub
from .logging_setup import setup_logging
from .protocol import (Info, Ping, Pong, PreviewFrame, ProtocolError, StartPreview,
                       StopPreview, decode_client_message)
from .scheduler import Scheduler
from .supervisor import CaptureSupervisor
from .uploader import PhotoUploader

logger = logging.getLogger(__name__)


# --- WebSocket server for preview viewers ---

class WebSocketConnection:
    """
    Lets hub threads send to a socket owned by the asyncio loop.

    Only one preview frame is in flight per viewer; if the previous frame
    has not been written yet the new one is dropped.
    """

    def __init__(self, websocket, loop):
        self._ws = websocket
        self._loop = loop
        self._lock = threading.Lock()
        self._frame_future = None

    def send(self, message):
        if isinstance(message, PreviewFrame):
            with self._lock:
                if self._frame_future is not None and not self._frame_future.done():
                    return
                self._frame_future = self._submit(message.to_json())
        else:
            self._submit(message.to_json())

    def _submit(self, text):
        future = asyncio.run_coroutine_threadsafe(self._ws.send(text), self._loop)
        future.add_done_callback(self._check_sent)
        return future

    @staticmethod
    def _check_sent(future):
        if future.cancelled():
            return
        e = future.exception()
        if e is not None and not isinstance(e, websockets.ConnectionClosed):
            logger.warning("[WS] send failed: %s", e)


class ViewerServer:
    def __init__(self, hub, host="0.0.0.0", port=8765):
        self._hub = hub
        self.host = host
        self.port = port

    async def handler(self, websocket, path=None):
        """Handle one viewer (compatible with websockets >=10)."""
        loop = asyncio.get_running_loop()
        peer = getattr(websocket, "remote_address", None)
        subscriber_id = self._hub.connect(WebSocketConnection(websocket, loop))
        logger.info("[WS] viewer connected from %s", peer)
        try:
            await websocket.send(Info("Connected to FotoBox camera server").to_json())
            async for raw in websocket:
                try:
                    message = decode_client_message(raw)
                except ProtocolError as e:
                    logger.warning("[WS] ignoring message from %s: %s", peer, e)
                    continue

                if isinstance(message, Ping):
                    await websocket.send(Pong(message.timestamp).to_json())
                elif isinstance(message, StartPreview):
                    await loop.run_in_executor(None, self._hub.start_preview, subscriber_id)
                elif isinstance(message, StopPreview):
                    await loop.run_in_executor(None, self._hub.stop_preview, subscriber_id)
        except websockets.ConnectionClosed:
            pass
        finally:
            await loop.run_in_executor(None, self._hub.disconnect, subscriber_id)
            logger.info("[WS] viewer %s disconnected", peer)

    async def serve(self):
        async with websockets.serve(
            self.handler,
            host=self.host,
            port=self.port,
            max_size=1024 * 1024,
            ping_interval=20,
            ping_timeout=10,
        ):
            logger.info("[WS] Listening on ws://%s:%d", self.host, self.port)
            # Run forever
            await asyncio.Future()

    def start_in_thread(self):
        """Run the websocket server in a dedicated asyncio loop inside a thread."""
        thread = threading.Thread(target=lambda: asyncio.run(self.serve()), daemon=True,
                                  name="viewer-ws")
        thread.start()
        return thread


# --- Flask API ---

def create_app(coordinator, uploader, supervisor, photos_dir):
    app = Flask(__name__)
    CORS(app)

    @app.route("/api/photos/capture", methods=["POST"])
    def capture():
        try:
            result = coordinator.capture_photo()
        except CaptureInProgress as e:
            return jsonify({"success": False, "error": str(e)}), 409
        except DeviceUnavailable as e:
            return jsonify({"success": False, "error": str(e)}), 503
        return jsonify(result.to_dict())

    @app.route("/api/photos")
    def list_photos():
        """Local photos, most recent first"""
        photos = []
        for entry in os.scandir(photos_dir):
            if entry.is_file() and entry.name.lower().endswith((".jpg", ".jpeg", ".png")):
                photos.append({
                    "filename": entry.name,
                    "url": f"/photos/{entry.name}",
                    "timestamp": int(entry.stat().st_mtime * 1000),
                })
        photos.sort(key=lambda p: p["timestamp"], reverse=True)
        return jsonify(photos)

    @app.route("/api/status")
    def status():
        connectivity = uploader.connectivity
        return jsonify({
            "status": "ok",
            "camera": supervisor.status(),
            "captureInProgress": coordinator.in_flight,
            "online": connectivity.is_online,
            "lastChecked": connectivity.last_checked,
            "pendingUploads": uploader.pending_count(),
        })

    @app.route("/api/camera/reset", methods=["POST"])
    def reset_camera():
        supervisor.reset_retries()
        return jsonify({"success": True, "camera": supervisor.status()})

    @app.route("/api/uploads")
    def list_uploads():
        return jsonify(uploader.get_all_pending())

    @app.route("/api/uploads/<photo_id>")
    def upload_status(photo_id):
        record = uploader.get_upload_status(photo_id)
        if record is None:
            return jsonify({"error": "Upload not found"}), 404
        return jsonify(record)

    @app.route("/api/uploads/check", methods=["POST"])
    def check_connection():
        uploader.request_connectivity_check()
        return jsonify({"success": True}), 202

    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description="FotoBox camera server")
    parser.add_argument("--host", default=config.HOST)
    parser.add_argument("--port", type=int, default=config.HTTP_PORT)
    parser.add_argument("--ws-port", type=int, default=config.WS_PORT)
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    config.ensure_directories()
    setup_logging(config.LOG_DIR, getattr(logging, args.log_level))

    scheduler = Scheduler()
    supervisor = CaptureSupervisor(
        config.PREVIEW_COMMAND,
        scheduler,
        demuxer=FrameDemuxer(config.MAX_DEMUX_BUFFER),
        max_retries=config.MAX_RESTARTS,
        cooldown=config.RESTART_COOLDOWN_S,
        reset_window=config.RETRY_RESET_WINDOW_S,
        fatal_patterns=config.FATAL_STDERR_PATTERNS,
        stop_timeout=config.STOP_TIMEOUT_S,
        chunk_size=config.CHUNK_SIZE,
    )
    hub = StreamHub(supervisor, stop_timeout=config.STOP_TIMEOUT_S)
    uploader = PhotoUploader(
        config.HOME_SERVER_URL,
        config.API_KEY,
        config.TRACKING_DIR,
        scheduler,
        photo_view_url=config.PHOTO_VIEW_URL,
        max_retries=config.UPLOAD_MAX_RETRIES,
        retry_delay=config.UPLOAD_RETRY_DELAY_S,
        check_interval=config.CONNECTIVITY_CHECK_INTERVAL_S,
        probe_timeout=config.PROBE_TIMEOUT_S,
        upload_timeout=config.UPLOAD_TIMEOUT_S,
    )
    coordinator = CaptureCoordinator(
        hub,
        uploader,
        scheduler,
        config.PHOTOS_DIR,
        config.QR_DIR,
        config.THUMBNAIL_DIR,
        config.CAPTURE_COMMAND,
        fallback_command=config.FALLBACK_CAPTURE_COMMAND,
        stabilization_delay=config.STABILIZATION_DELAY_S,
        capture_timeout=config.CAPTURE_TIMEOUT_S,
        prefix=config.PHOTO_PREFIX,
        thumbnail_width=config.THUMBNAIL_WIDTH,
        qr_scale=config.QR_SCALE,
        qr_margin=config.QR_MARGIN,
    )
    uploader.start()

    logger.info("Starting FotoBox camera server")
    logger.info("Photos directory: %s", config.PHOTOS_DIR)
    logger.info("Upload tracking directory: %s", config.TRACKING_DIR)
    ViewerServer(hub, args.host, args.ws_port).start_in_thread()

    app = create_app(coordinator, uploader, supervisor, config.PHOTOS_DIR)
    try:
        app.run(host=args.host, port=args.port, debug=False, threaded=True, use_reloader=False)
    finally:
        supervisor.stop(timeout=config.STOP_TIMEOUT_S)
        uploader.shutdown()
        scheduler.shutdown()
