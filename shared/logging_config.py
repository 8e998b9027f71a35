"""Centralized logging configuration with file rotation support."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

APP_LOGGER = "rsgateway"

DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

# Component loggers that should share the application handlers
COMPONENT_LOGGERS = ("gateway", "shared")


def setup_logging(
    name: str = APP_LOGGER,
    level: str = "INFO",
    log_file: str | Path | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    stream: object = None,
    log_format: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
    attach: tuple[str, ...] | None = None,
) -> logging.Logger:
    """
    Configure logging with optional file rotation.

    Args:
        name: Application logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file. If None, only console logging.
        max_bytes: Maximum size of each log file before rotation (default: 10MB)
        backup_count: Number of backup files to keep (default: 5)
        stream: Stream for console logging (default: stderr)
        log_format: Log message format
        date_format: Timestamp format
        attach: Package loggers (``gateway.*`` modules log under ``__name__``)
            that receive the same handlers. Defaults to COMPONENT_LOGGERS for
            the application logger and none otherwise.

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(log_format, datefmt=date_format)

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if attach is None:
        attach = COMPONENT_LOGGERS if name == APP_LOGGER else ()

    logger = logging.getLogger(name)
    for target in (logger, *(logging.getLogger(n) for n in attach if n != name)):
        target.setLevel(numeric_level)
        target.handlers.clear()
        for handler in handlers:
            target.addHandler(handler)
        # Prevent duplicate output through the root logger
        target.propagate = False

    return logger


def setup_logging_from_env(
    level: str | None = None,
    log_file: str | Path | None = None,
    env: dict | None = None,
) -> logging.Logger:
    """Configure logging, letting RSGATEWAY_LOG_* variables override defaults."""
    env = os.environ if env is None else env
    return setup_logging(
        name=APP_LOGGER,
        level=env.get("RSGATEWAY_LOG_LEVEL") or level or "INFO",
        log_file=env.get("RSGATEWAY_LOG_FILE") or log_file,
        max_bytes=int(env.get("RSGATEWAY_LOG_MAX_BYTES", DEFAULT_MAX_BYTES)),
        backup_count=int(env.get("RSGATEWAY_LOG_BACKUP_COUNT", DEFAULT_BACKUP_COUNT)),
    )


def get_default_log_dir() -> Path:
    """
    Get the default log directory.

    Uses /var/log/rsgateway when running as a service (root or the directory
    already exists), else ~/.rsgateway/logs.
    """
    var_log = Path("/var/log/rsgateway")
    if var_log.exists() or os.geteuid() == 0:
        return var_log
    return Path.home() / ".rsgateway" / "logs"


def get_default_log_file() -> Path:
    """Get the default gateway log file path."""
    return get_default_log_dir() / "gateway.log"
