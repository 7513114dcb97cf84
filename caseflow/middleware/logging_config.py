"""
Structured logging for the lifecycle engine.

- Development: one coloured line per record, prefixed with the tenant /
  case / actor the record belongs to
- Production: one JSON object per record (log aggregator compatible)
- Level: ``LOG_LEVEL`` config key (env), DEBUG in development otherwise

Every record emitted while a request is active is stamped with
``request_id``, ``tenant_id`` and ``actor`` from ``flask.g`` by
``RequestContextFilter``. Services add ``case_id`` / ``stage_instance_id`` /
``transition_id`` themselves through ``extra=``.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Keys lifted from the record into the JSON payload, in output order
CONTEXT_KEYS = (
    "request_id",
    "tenant_id",
    "actor",
    "case_id",
    "stage_instance_id",
    "transition_id",
    "entity_type",
    "operation",
    "field",
    "method",
    "path",
    "status",
    "duration_ms",
)

QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "flask_limiter")


class RequestContextFilter(logging.Filter):
    """Copy request identity from ``g`` onto records that don't carry it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            for key in ("request_id", "tenant_id", "actor"):
                if getattr(record, key, None) is None:
                    setattr(record, key, getattr(g, key, None))
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "app": "caseflow",
        }
        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _scope(record) -> str:
        parts = []
        tenant_id = getattr(record, "tenant_id", None)
        if tenant_id is not None:
            parts.append(f"t{tenant_id}")
        case_id = getattr(record, "case_id", None)
        if case_id is not None:
            parts.append(f"case {case_id}")
        actor = getattr(record, "actor", None)
        if actor:
            parts.append(actor)
        return f"[{' '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{color}{ts} {record.levelname[0]}{self.RESET} "
            f"{record.name.removeprefix('caseflow.')}: {self._scope(record)}{record.getMessage()}"
        )
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = (app.config.get("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    # tests build several apps in one process
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, "json" if is_prod else "readable")
