"""
Structured logging configuration.

- Development: one readable line per record, coloured by level
- Production: one JSON object per record (log aggregator compatible)
- Level: LOG_LEVEL env variable

Background jobs and the dispatcher pass ``extra={"job_name": ...}`` or
``extra={"notification_id": ..., "channel": ...}``; those keys are lifted
into the JSON payload so a single delivery can be traced across runs.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Keys copied from LogRecord.__dict__ into the JSON payload when present
_CONTEXT_KEYS = (
    "job_name",
    "duration_ms",
    "notification_id",
    "channel",
    "entity_type",
    "entity_id",
    "actor_id",
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        job = getattr(record, "job_name", None)
        tag = f" [{job}]" if job else ""
        line = (
            f"{color}{datetime.now().strftime('%H:%M:%S')} {record.levelname:<8}{self.RESET}"
            f" {record.name}{tag}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    LOG_LEVEL defaults to INFO in production and DEBUG otherwise.
    Production gets JSONFormatter, everything else ReadableFormatter.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if is_prod else "readable")
