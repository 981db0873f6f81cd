import logging
import logging.handlers
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
MAX_LOG_BYTES = 10 * 1024 * 1024
MAX_LOG_FILES = 5


def setup_logging(log_dir=None, level=logging.INFO):
    """Log to the console and, if log_dir is given, to a size-rotated file."""
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "fotobox.log"),
            maxBytes=MAX_LOG_BYTES,
            backupCount=MAX_LOG_FILES,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Disable Flask development server warning noise
    logging.getLogger("werkzeug").setLevel(logging.ERROR)
