"""
Structured logging configuration.

Every module logs through ``logging.getLogger(__name__)``. Workflow events
pass their context in ``extra``:

    logger.info("Story status changed: %s -> %s", old, new, extra={
        "entity_type": "story", "entity_id": 42,
        "from_status": old, "to_status": new, "actor_id": 7,
    })

- Development / testing: one readable line, workflow context in brackets
- Production: one JSON object per line
- LOG_LEVEL sets the level, LOG_FORMAT=json|readable overrides the format
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")

WORKFLOW_FIELDS = (
    "event_type", "entity_type", "entity_id", "from_status", "to_status",
    "actor_id", "error_code",
)


def _extras(record, fields):
    return {key: getattr(record, key) for key in fields
            if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for the log aggregator."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_extras(record, REQUEST_FIELDS))
        entry.update(_extras(record, WORKFLOW_FIELDS))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _workflow_tag(record):
        ctx = _extras(record, WORKFLOW_FIELDS)
        if "entity_type" not in ctx:
            return f" [{ctx['error_code']}]" if "error_code" in ctx else ""
        tag = f"{ctx['entity_type']}#{ctx.get('entity_id', '?')}"
        if "actor_id" in ctx:
            tag += f" by user {ctx['actor_id']}"
        if "error_code" in ctx:
            tag += f" {ctx['error_code']}"
        return f" [{tag}]"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        line = (f"{color}{datetime.now():%H:%M:%S} {record.levelname:<8}{self.RESET} "
                f"{record.name}: {record.getMessage()}{self._workflow_tag(record)}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    Called first in ``create_app`` so extension setup is logged too.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = os.getenv("LOG_FORMAT", "json" if is_prod else "readable").lower()
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter()

    root = logging.getLogger()
    # create_app runs once per test session; never stack handlers
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
