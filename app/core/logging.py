"""Logging configuration for the progress core and its worker.

TWO FORMATTERS
---------------
  _ContainerFormatter: human-readable, single-line, for local dev.
    You read these with your eyes in a terminal.

  _JsonFormatter: machine-parseable, for production.
    Log aggregation systems parse JSON natively, so context fields such as
    user_id or course_id become filterable without regex:

      {"level": "INFO", "message": "Certificate issued", "course_id": "..."}

    Set LOG_JSON=true in production to switch to JSON output.

TASK CONTEXT
-------------
The worker processes one task at a time per asyncio task.  The current
task id lives in a ContextVar; _TaskContextFilter copies it onto every
LogRecord so a failing recompute can be traced back to the queue entry
that triggered it.  Code outside the worker sees the default "-".
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar

task_id_var: ContextVar[str] = ContextVar("task_id", default="-")


class _TaskContextFilter(logging.Filter):
    """Inject the current worker task id into every LogRecord."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.task_id = task_id_var.get("-")  # type: ignore[attr-defined]
        return True


class _ContainerFormatter(logging.Formatter):
    """Single-line formatter tuned for container stdout.

    - Always: ISO-8601 timestamp, level, logger name, message
    - WARNING+: appends [filename:lineno] so you can locate the guard clause
    - ERROR/CRITICAL: stack trace included when exc_info is present
    """

    _BASE_FMT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
    _LOC_SUFFIX = "  [%(filename)s:%(lineno)d]"

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = super().formatTime(record, datefmt)
        ms = int(record.msecs)
        # Insert .NNN before the timezone offset (last 5 chars: +0000)
        return f"{base[:-5]}.{ms:03d}{base[-5:]}"

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            self._style._fmt = self._BASE_FMT + self._LOC_SUFFIX
        else:
            self._style._fmt = self._BASE_FMT
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """JSON Lines formatter: one JSON object per log record.

    Context fields passed through ``extra=`` (or stamped by
    _TaskContextFilter) appear as top-level keys.
    """

    _CONTEXT_FIELDS = (
        "task_id",
        "user_id",
        "course_id",
        "lesson_id",
        "metric_type",
        "duration_ms",
    )

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self._CONTEXT_FIELDS:
            value = getattr(record, key, None)
            # "-" is the filter's placeholder outside a worker task
            if value is not None and value != "-":
                log_entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Configure the root logger for container environments.

    - Sends everything to stdout (Docker captures stdout/stderr)
    - Applies the appropriate formatter based on json_format
    - Installs the task-context filter once
    - Quiets noisy third-party loggers

    Args:
        level_name: Log level string (debug/info/warning/error)
        json_format: If True, emit JSON lines. If False, human-readable.
                     Controlled by LOG_JSON env var in Settings.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())
    handler.addFilter(_TaskContextFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # Keep third-party loggers from flooding at DEBUG
    for name in ("sqlalchemy.engine", "asyncio", "redis"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
