import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ..config.config import settings

_logged_once_keys = set()
_logged_once_lock = threading.Lock()


def setup_logging():
    """
    Installs the application-wide logging configuration.

    Logs go both to stdout (development) and to a size-rotated file under
    settings.LOG_DIR (production). Existing root handlers, e.g. the ones
    uvicorn installs, are replaced so every line shares one format.
    """
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(exist_ok=True)

    # Time - module - level - message
    log_format = "%(asctime)s - [%(name)s] - %(levelname)s - %(message)s"

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    if logger.hasHandlers():
        logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(log_format))
    logger.addHandler(stdout_handler)

    # Rolls over to attendtrack.log.1 ... .5 once the file passes 5 MB
    file_handler = RotatingFileHandler(
        log_dir / "attendtrack.log",
        maxBytes=5*1024*1024,
        backupCount=5
    )
    file_handler.setFormatter(logging.Formatter(log_format))
    logger.addHandler(file_handler)


def log_once(logger: logging.Logger, key: str, message: str, level: int = logging.WARNING) -> bool:
    """
    Logs `message` only the first time `key` is seen in this process.
    Returns True when the message was actually emitted.
    """
    with _logged_once_lock:
        if key in _logged_once_keys:
            return False
        _logged_once_keys.add(key)
    logger.log(level, message)
    return True


def reset_log_once():
    """Forgets every key seen by log_once (used by tests)."""
    with _logged_once_lock:
        _logged_once_keys.clear()
