"""
Centralized Logging Configuration for the DRA Sync Engine.

Records go to stdout and, when enabled, to rotating files under the log
directory. Job context (job id, entity) rides on every record through
``get_logger`` adapters.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from typing import Optional

from dra.config.settings import AppSettings

SERVICE_NAME = "dra-sync-engine"

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEBUG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
FILE_FORMAT = "%(timestamp)s %(levelname)s %(name)s job=%(job_id)s entity=%(entity)s %(message)s"

# Libraries that are too chatty at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "aiohttp", "pymongo")


class StructuredFormatter(logging.Formatter):
    """Formatter that guarantees job context attributes exist on a record."""

    def format(self, record):
        for attr in ("job_id", "entity"):
            if not hasattr(record, attr):
                setattr(record, attr, None)
        if not hasattr(record, "service_name"):
            record.service_name = SERVICE_NAME
        record.timestamp = datetime.fromtimestamp(record.created).isoformat()
        return super().format(record)


class JsonFormatter(StructuredFormatter):
    """One JSON object per record."""

    def format(self, record):
        super().format(record)
        payload = {
            "timestamp": record.timestamp,
            "level": record.levelname,
            "logger": record.name,
            "service": record.service_name,
            "job_id": record.job_id,
            "entity": record.entity,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _rotating_file(log_dir: str, filename: str, max_mb: int, backups: int,
                   formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, filename),
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backups,
    )
    handler.setFormatter(formatter)
    return handler


def _console(app_settings: AppSettings) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG if app_settings.debug else logging.INFO)
    if app_settings.structured_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEBUG_FORMAT if app_settings.debug else CONSOLE_FORMAT))
    return handler


def setup_logging(app_settings: Optional[AppSettings] = None) -> None:
    """Install console and optional file handlers on the root logger."""
    app_settings = app_settings or AppSettings()

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, app_settings.log_level.upper(), logging.INFO))
    root.addHandler(_console(app_settings))

    if app_settings.log_to_file:
        os.makedirs(app_settings.log_dir, exist_ok=True)
        app_handler = _rotating_file(app_settings.log_dir, "app.log", 10, 5, StructuredFormatter(FILE_FORMAT))
        app_handler.setLevel(logging.INFO)
        root.addHandler(app_handler)

        # Job outcomes also land in their own JSON file
        logging.getLogger("dra.jobs").addHandler(
            _rotating_file(app_settings.log_dir, "jobs.log", 50, 10, JsonFormatter())
        )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging ready (level={app_settings.log_level}, files={'on' if app_settings.log_to_file else 'off'})"
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Merges bound job context into each call's ``extra``."""

    def __init__(self, logger, extra=None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), context)
