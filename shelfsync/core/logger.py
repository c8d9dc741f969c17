"""Logging setup shared by every engine module."""

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

import psutil

from shelfsync.config.env import ENABLE_LOGGING, LOG_FILE, LOG_LEVEL

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(filename)s:%(lineno)d - %(message)s'
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

_loggers: Dict[str, "CustomLogger"] = {}
_loggers_lock = threading.Lock()


class CustomLogger(logging.Logger):
    """Logger whose error_trace attaches the stack and a resource snapshot."""

    def error_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log an error with the active exception's stack trace."""
        self.log_resource_usage()
        kwargs.pop('exc_info', None)
        self.error(msg, *args, exc_info=True, **kwargs)

    def log_resource_usage(self) -> None:
        # Never raise from here: it runs while another error is being reported.
        try:
            process = psutil.Process()
            rss_mb = process.memory_info().rss / (1024 * 1024)
            available_mb = psutil.virtual_memory().available / (1024 * 1024)
            workers = sum(1 for t in threading.enumerate() if t.name.startswith(("Transfer", "Metadata")))
        except (psutil.Error, OSError):
            return
        self.debug(
            f"Resources: RSS={rss_mb:.1f} MB, Available={available_mb:.1f} MB, "
            f"Threads={process.num_threads()}, Engine workers={workers}"
        )


def _stdout_filter(record: logging.LogRecord) -> bool:
    return record.levelno < logging.ERROR


def setup_logger(name: str, log_file: Path = LOG_FILE) -> CustomLogger:
    """Return the engine logger for a module, creating it on first use.

    Records below ERROR go to stdout and ERROR and above to stderr. When
    ENABLE_LOGGING is set, everything is also written to a rotating file.
    Repeated calls with the same name return the same logger.
    """
    with _loggers_lock:
        existing = _loggers.get(name)
        if existing is not None:
            return existing

        logger = CustomLogger(name)
        level = getattr(logging, LOG_LEVEL, logging.INFO)
        logger.setLevel(level)
        formatter = logging.Formatter(LOG_FORMAT)

        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(level)
        stdout_handler.setFormatter(formatter)
        stdout_handler.addFilter(_stdout_filter)
        logger.addHandler(stdout_handler)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.ERROR)
        stderr_handler.setFormatter(formatter)
        logger.addHandler(stderr_handler)

        if ENABLE_LOGGING:
            try:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                file_handler = RotatingFileHandler(log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
            except OSError as e:
                logger.warning(f"Logging to stdout only, cannot open {log_file}: {e}")

        _loggers[name] = logger
        return logger
