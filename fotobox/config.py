"""
FotoBox settings. Every value can be overridden from the environment.
"""
import os

BASE_DIR = os.path.abspath(os.environ.get("FOTOBOX_HOME", os.getcwd()))


def _env_list(name, default):
    value = os.environ.get(name)
    if not value:
        return list(default)
    return value.split()


# ====== CONFIG ======
HOST = os.environ.get("HOST", "0.0.0.0")
HTTP_PORT = int(os.environ.get("PORT", "5000"))
WS_PORT = int(os.environ.get("FOTOBOX_WS_PORT", "8765"))
BASE_URL = os.environ.get("BASE_URL", "http://localhost:5000")

PHOTOS_DIR = os.environ.get("FOTOBOX_PHOTOS_DIR", os.path.join(BASE_DIR, "public", "photos"))
QR_DIR = os.environ.get("FOTOBOX_QR_DIR", os.path.join(BASE_DIR, "public", "qrcodes"))
THUMBNAIL_DIR = os.environ.get("FOTOBOX_THUMBNAIL_DIR", os.path.join(PHOTOS_DIR, "thumbnails"))
TRACKING_DIR = os.environ.get("FOTOBOX_TRACKING_DIR", os.path.join(BASE_DIR, "data", "upload-tracking"))
LOG_DIR = os.environ.get("FOTOBOX_LOG_DIR", os.path.join(BASE_DIR, "logs"))

# MJPEG on stdout, one JPEG after another
PREVIEW_COMMAND = _env_list("FOTOBOX_PREVIEW_COMMAND", ["gphoto2", "--stdout", "--capture-movie"])
CAPTURE_COMMAND = _env_list(
    "FOTOBOX_CAPTURE_COMMAND",
    ["gphoto2", "--capture-image-and-download", "--force-overwrite", "--filename", "{path}"],
)
FALLBACK_CAPTURE_COMMAND = _env_list(
    "FOTOBOX_FALLBACK_CAPTURE_COMMAND",
    ["libcamera-still", "-n", "-t", "1000", "-o", "{path}"],
)
FATAL_STDERR_PATTERNS = tuple(
    p.strip() for p in os.environ.get(
        "FOTOBOX_FATAL_STDERR_PATTERNS",
        "device busy,could not claim the usb device,i/o in progress",
    ).split(",") if p.strip()
)

# bytes to read from camera pipe each iteration
CHUNK_SIZE = int(os.environ.get("FOTOBOX_CHUNK_SIZE", "65536"))
# drop the demux buffer if no frame completes within this
MAX_DEMUX_BUFFER = int(os.environ.get("FOTOBOX_MAX_DEMUX_BUFFER", str(5 * 1024 * 1024)))
MAX_RESTARTS = int(os.environ.get("FOTOBOX_MAX_RESTARTS", "3"))
RESTART_COOLDOWN_S = float(os.environ.get("FOTOBOX_RESTART_COOLDOWN", "5"))
RETRY_RESET_WINDOW_S = float(os.environ.get("FOTOBOX_RETRY_RESET_WINDOW", "60"))
STOP_TIMEOUT_S = float(os.environ.get("FOTOBOX_STOP_TIMEOUT", "3"))
CAPTURE_TIMEOUT_S = float(os.environ.get("FOTOBOX_CAPTURE_TIMEOUT", "30"))
STABILIZATION_DELAY_S = float(os.environ.get("FOTOBOX_STABILIZATION_DELAY", "1"))

HOME_SERVER_URL = os.environ.get("FOTOBOX_SERVER_URL", "https://photo-view.slyrix.com")
API_KEY = os.environ.get("FOTOBOX_API_KEY", "your-secret-api-key")
PHOTO_VIEW_URL = os.environ.get("FOTOBOX_PHOTO_VIEW_URL", HOME_SERVER_URL)
UPLOAD_MAX_RETRIES = int(os.environ.get("FOTOBOX_UPLOAD_MAX_RETRIES", "5"))
UPLOAD_RETRY_DELAY_S = float(os.environ.get("FOTOBOX_UPLOAD_RETRY_DELAY", "30"))
CONNECTIVITY_CHECK_INTERVAL_S = float(os.environ.get("FOTOBOX_CHECK_INTERVAL", "300"))
PROBE_TIMEOUT_S = float(os.environ.get("FOTOBOX_PROBE_TIMEOUT", "5"))
UPLOAD_TIMEOUT_S = float(os.environ.get("FOTOBOX_UPLOAD_TIMEOUT", "30"))

PHOTO_PREFIX = os.environ.get("FOTOBOX_PHOTO_PREFIX", "photo")
THUMBNAIL_WIDTH = int(os.environ.get("FOTOBOX_THUMBNAIL_WIDTH", "400"))
QR_SCALE = int(os.environ.get("FOTOBOX_QR_SCALE", "8"))
QR_MARGIN = int(os.environ.get("FOTOBOX_QR_MARGIN", "1"))
# ====================


def ensure_directories():
    for path in (PHOTOS_DIR, QR_DIR, THUMBNAIL_DIR, TRACKING_DIR, LOG_DIR):
        os.makedirs(path, exist_ok=True)
