# registry_app/utils/logging_config.py

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "registry.log"

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Render records as one JSON object per line, keeping ``extra`` fields."""

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(log_format):
    if str(log_format).lower() == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(app):
    """
    Configure the Flask application logger from the monitoring config.

    Reads ``LOG_LEVEL``, ``LOG_FORMAT`` (``json`` or ``text``), ``LOG_DIR``,
    ``ENABLE_FILE_LOGGING``, ``LOG_FILE_MAX_BYTES``, ``LOG_FILE_BACKUP_COUNT``
    and ``ENABLE_CONSOLE_LOGGING``. Pipeline loggers created with
    ``logging.getLogger("registry_app...")`` share the same handlers.
    """
    config = app.config
    level_name = str(config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(config.get("LOG_FORMAT", "text"))

    handlers = []
    if config.get("ENABLE_FILE_LOGGING", False):
        log_dir = config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=int(config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        handlers.append(file_handler)
    if config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())

    pipeline_logger = logging.getLogger("registry_app")
    for logger in (app.logger, pipeline_logger):
        # Avoid stacking handlers when the app module is imported more than once
        for handler in list(logger.handlers):
            if getattr(handler, "_registry_handler", False):
                logger.removeHandler(handler)
                handler.close()
        logger.setLevel(level)

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._registry_handler = True
        app.logger.addHandler(handler)
        pipeline_logger.addHandler(handler)

    app.logger.debug(
        "Logging configured",
        extra={"log_level": level_name, "log_handlers": [type(h).__name__ for h in handlers]},
    )
    return app.logger
