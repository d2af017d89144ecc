"""
Centralized logging manager for the application.

Every module obtains its logger through get_logger(). Loggers share the handlers of the
application root logger (console always, a per-worker file when LOG_TO_FILE is set and a
Loki push handler when LOKI_ENABLED is set); a prefix such as "[IPAMManager]" is applied
per child logger so log lines from different components remain greppable.

Loki Downtime Handling:
----------------------
- If Loki is unreachable at handler setup, the error is logged and console/file logging continues.
- Records emitted while Loki is down at runtime are dropped by the handler; ship the per-worker
  files with a log shipper (Promtail, Fluentd) when delivery guarantees matter.
"""

import logging
import os
import sys

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from ipam_allocator.config import settings

ROOT_LOGGER_NAME: str = "IPAM_Allocator"
LOKI_URL: str = os.getenv("LOKI_URL", settings.LOKI_URL)
LOKI_TAGS: dict[str, str] = {
    "app": os.getenv("APP_NAME", settings.APP_NAME),
    "env": os.getenv("ENV", settings.ENV),
}
LOG_LEVEL: str = os.getenv("LOG_LEVEL", settings.LOG_LEVEL).upper()
LOKI_COMPRESS: bool = settings.LOKI_COMPRESS

_FORMATTER = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


class PrefixFilter(logging.Filter):
    """Prepend a component prefix to every record passing through a logger."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def _ensure_console_handler(logger: logging.Logger) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)
    return True


def get_worker_log_filename() -> str:
    return os.path.join(settings.LOG_DIR, f"worker_{os.getpid()}.log")


def _ensure_file_handler(logger: logging.Logger) -> bool:
    log_filename = get_worker_log_filename()
    if any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_filename)
        for h in logger.handlers
    ):
        return False
    os.makedirs(os.path.dirname(log_filename), exist_ok=True)
    file_handler = logging.FileHandler(log_filename)
    file_handler.setFormatter(_FORMATTER)
    logger.addHandler(file_handler)
    return True


def _ensure_loki_handler(logger: logging.Logger) -> bool:
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return False
    try:
        loki_handler = LokiLoggerHandler(
            url=LOKI_URL,
            labels=LOKI_TAGS,
            auth=None,
            compressed=LOKI_COMPRESS,
        )
    except (OSError, ValueError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s", e, exc_info=True)
        return False
    logger.addHandler(loki_handler)
    logger.info("[LoggingManager] LokiLoggerHandler attached (url=%s, labels=%s)", LOKI_URL, LOKI_TAGS)
    return True


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    if _ensure_console_handler(root):
        root.debug("[LoggingManager] Console StreamHandler attached to logger '%s'", ROOT_LOGGER_NAME)
    if settings.LOG_TO_FILE:
        _ensure_file_handler(root)
    return root


def get_logger(name: str = ROOT_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """
    Return an application logger.

    Args:
        name: Logger name; names outside the application namespace are nested under it.
        add_loki: Attach the Loki handler to the application root when LOKI_ENABLED is set.
        prefix: Text prepended to every message logged through the returned logger.
    """
    root = _configure_root()
    if add_loki and settings.LOKI_ENABLED:
        _ensure_loki_handler(root)

    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    if prefix:
        name = f"{name}.{prefix.strip('[]').replace(' ', '_')}"
    logger = logging.getLogger(name)

    if prefix and not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))
    return logger
