import logging
import os
import sys
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)-12s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# The relay runs for weeks; keep the file log bounded
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# Log every request or IMAP command at INFO, several times a second while polling
NOISY_LOGGERS = ("httpx", "httpcore", "imapclient")


def get_logger(name: str) -> logging.Logger:
    """Module loggers: `logger = get_logger(__name__)`."""
    return logging.getLogger(name)


def setup_logging(log_level: str = "INFO", log_file: str = "") -> None:
    """Configure the root logger once, from main.py.

    Scheduler threads ("scheduler-poll-fast", "scheduler-health") and the
    webhook workers ("webhook_0") are named, so the thread column shows
    which loop a line came from.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = _build_handlers(log_file)
    for handler in handlers:
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers, force=True)

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def _build_handlers(log_file: str) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if not log_file:
        return handlers
    directory = os.path.dirname(log_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    handlers.append(RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS))
    return handlers
