"""
Logging utilities shared by the bots.

Provides:
- Colored console output
- JSON lines file output for log aggregation
- Rotating file handlers (10MB max, keep 5)

Usage:
    from bots.shared.logging_utils import setup_logger

    setup_logger("gov_voter", logger_name="bots", log_level="INFO")
    logging.getLogger(__name__).info("Bot started")
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional, Union

# Default log directory (can be overridden via GOV_VOTER_LOG_DIR env var)
DEFAULT_LOG_DIR = Path.home() / ".gov-voter" / "logs"

MAX_LOG_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

# Libraries that log every request at INFO (httpx logs bot-token URLs)
NOISY_LOGGERS = ("httpx", "httpcore", "telegram", "aiohttp", "urllib3", "grpc")

# ANSI color codes for console output
COLORS = {
    "DEBUG": "\033[36m",     # Cyan
    "INFO": "\033[32m",      # Green
    "WARNING": "\033[33m",   # Yellow
    "ERROR": "\033[31m",     # Red
    "CRITICAL": "\033[35m",  # Magenta
    "RESET": "\033[0m",      # Reset
}


def get_log_dir(log_dir: Optional[Union[str, Path]] = None) -> Path:
    """Get the log directory: explicit argument, then GOV_VOTER_LOG_DIR, then the default."""
    path = Path(log_dir or os.environ.get("GOV_VOTER_LOG_DIR") or DEFAULT_LOG_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured log output.

    Produces JSON lines (one JSON object per line).
    """

    def __init__(self, bot_name: str):
        super().__init__()
        self.bot_name = bot_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "bot_name": self.bot_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "extra_data"):
            log_entry.update(record.extra_data)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Adds ANSI color codes to the level name for terminal output."""

    FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __init__(self):
        super().__init__(self.FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        color = COLORS.get(record.levelname, COLORS["RESET"])
        reset = COLORS["RESET"]

        original_levelname = record.levelname
        record.levelname = f"{color}{record.levelname}{reset}"
        try:
            return super().format(record)
        finally:
            record.levelname = original_levelname


# Cache of configured loggers to avoid duplicate handlers
_configured_loggers: Dict[str, logging.Logger] = {}


def cleanup_logger(logger_name: str) -> None:
    """
    Close and remove every handler installed by setup_logger.

    Needed in tests so the rotating file can be deleted.
    """
    logger = _configured_loggers.pop(logger_name, None)
    if logger is None:
        return
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True


def setup_logger(
    bot_name: str,
    logger_name: Optional[str] = None,
    log_level: Union[int, str] = logging.INFO,
    log_dir: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """
    Set up console (colored) and file (JSON) output for a bot.

    Handlers go on ``logger_name`` (default: ``bot_name``) so every module
    logger below it (``logging.getLogger(__name__)``) is covered. The file
    is ``<log_dir>/<bot_name>.log``.

    Returns:
        The configured logger.
    """
    logger_name = logger_name or bot_name
    if logger_name in _configured_loggers:
        return _configured_loggers[logger_name]

    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    logger = logging.getLogger(logger_name)
    logger.setLevel(log_level)

    # Prevent propagation to root logger to avoid duplicate logs
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(ColoredFormatter())
    logger.addHandler(console_handler)

    log_file = get_log_dir(log_dir) / f"{bot_name}.log"
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=MAX_LOG_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(JSONFormatter(bot_name))
    logger.addHandler(file_handler)

    # SECURITY: HTTP client libraries log full request URLs, which include the bot token
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured_loggers[logger_name] = logger
    return logger


__all__ = [
    "setup_logger",
    "cleanup_logger",
    "get_log_dir",
    "ColoredFormatter",
    "JSONFormatter",
]
