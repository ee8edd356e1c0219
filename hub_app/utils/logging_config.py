# hub_app/utils/logging_config.py
"""
Application logging: JSON or text formatting, console and rotating file handlers.

Structured fields passed through ``extra=`` (``integration_run_id`` and
friends) are carried into JSON output.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

HANDLER_MARKER = "_integration_hub_handler"
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys() | {"message", "asctime", "taskName"}
)
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Format records as one JSON object per line."""

    def __init__(self, app_name: str = "", app_version: str = ""):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if self.app_name:
            payload["app"] = self.app_name
        if self.app_version:
            payload["version"] = self.app_version
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(app) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "text")).lower() == "json":
        return JSONFormatter(app.config.get("APP_NAME", ""), app.config.get("APP_VERSION", ""))
    return logging.Formatter(TEXT_FORMAT)


def _remove_managed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(app):
    """
    Configure ``app.logger`` from the monitoring config.

    Safe to call repeatedly; handlers installed by an earlier call are replaced.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(app)

    logger = app.logger
    _remove_managed_handlers(logger)
    logger.setLevel(level)

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        setattr(console_handler, HANDLER_MARKER, True)
        logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, app.config.get("LOG_FILE_NAME", "integration_hub.log")),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        setattr(file_handler, HANDLER_MARKER, True)
        logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    logger.debug("Logging configured (level=%s, format=%s)", logging.getLevelName(level), app.config.get("LOG_FORMAT"))
    return logger
