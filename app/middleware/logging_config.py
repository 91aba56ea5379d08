"""
Logging for the review service.

Every record goes through ReviewContextFilter, which stamps it with the
current request id and with the review session bound by ``review_context``.
Lines written from the background review thread and from collector workers
can then be traced back to the session that produced them.

Settings (app.config first, then the environment):
    LOG_FORMAT     json | readable  (default: json in production, readable otherwise)
    LOG_LEVEL      root level       (default: INFO in production, DEBUG otherwise)
    AWS_LOG_LEVEL  level for boto3, botocore and urllib3 (default: WARNING)
"""

import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone

from flask import g, has_request_context

_current_review = contextvars.ContextVar("current_review", default=None)

# Review attributes, rendered in this order
REVIEW_FIELDS = ("session_id", "step", "collector", "error_category", "prompt_name", "model")
# Set by the timing middleware
REQUEST_FIELDS = ("request_id", "method", "path", "status", "duration_ms", "remote_addr")

LOG_FORMATS = ("json", "readable")
_AWS_LOGGERS = ("boto3", "botocore", "urllib3")


@contextmanager
def review_context(session_id: str):
    """Attach ``session_id`` to every record logged inside the block."""
    token = _current_review.set(session_id)
    try:
        yield
    finally:
        _current_review.reset(token)


def current_review() -> str | None:
    return _current_review.get()


class ReviewContextFilter(logging.Filter):
    """Fill session_id and request_id on records that do not carry them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "session_id", None) is None:
            record.session_id = _current_review.get()
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; review and request fields only when set."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in REVIEW_FIELDS + REQUEST_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        entry["origin"] = f"{record.module}.{record.funcName}:{record.lineno}"
        if record.threadName != "MainThread":
            entry["thread"] = record.threadName
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception_type"] = record.exc_info[0].__name__
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line format for local runs.

    Review context follows the logger name as tags, e.g.
    ``review=1a2b3c4d step=2 collector=iam !access_denied``.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    @staticmethod
    def tags(record: logging.LogRecord) -> list[str]:
        tags = []
        session_id = getattr(record, "session_id", None)
        if session_id:
            tags.append(f"review={str(session_id)[:8]}")
        for key in ("step", "collector", "prompt_name"):
            val = getattr(record, key, None)
            if val is not None:
                tags.append(f"{key}={val}")
        category = getattr(record, "error_category", None)
        if category:
            tags.append(f"!{category}")
        return tags

    def format(self, record: logging.LogRecord) -> str:
        color, reset = (self.COLORS.get(record.levelname, ""), self.RESET) if self.color else ("", "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = self.tags(record)
        tag_str = f" [{' '.join(tags)}]" if tags else ""
        duration = getattr(record, "duration_ms", None)
        dur_str = f" ({duration:.0f}ms)" if duration is not None else ""
        line = f"{color}{ts} {record.levelname:<8}{reset} {record.name}{tag_str}: {record.getMessage()}{dur_str}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _setting(app, name: str, default: str) -> str:
    return str(app.config.get(name) or os.getenv(name) or default)


def build_handler(log_format: str, level: int) -> logging.Handler:
    """stderr handler with the review context filter and the chosen formatter."""
    if log_format not in LOG_FORMATS:
        raise ValueError(f"LOG_FORMAT must be one of {', '.join(LOG_FORMATS)}, got {log_format!r}")
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(ReviewContextFilter())
    handler.setFormatter(JSONFormatter() if log_format == "json" else ReadableFormatter(sys.stderr.isatty()))
    handler.setLevel(level)
    return handler


def configure_logging(app):
    """Install the review service handler on the root logger."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = _setting(app, "LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = _setting(app, "LOG_FORMAT", "json" if is_prod else "readable").lower()

    # Single root handler; cleared first so repeated app creation does not stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(build_handler(log_format, level))
    root.setLevel(level)

    aws_level = getattr(logging, _setting(app, "AWS_LOG_LEVEL", "WARNING").upper(), logging.WARNING)
    for name in _AWS_LOGGERS:
        logging.getLogger(name).setLevel(aws_level)
    for name in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s aws_level=%s",
                        level_name, log_format, logging.getLevelName(aws_level))
