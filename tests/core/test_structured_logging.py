"""JSON log output: worker context fields must survive as top-level keys."""

from __future__ import annotations

import json
import logging
import sys

from app.core.logging import (
    _ContainerFormatter,
    _JsonFormatter,
    _TaskContextFilter,
    task_id_var,
)


def _record(msg: str = "test message", level: int = logging.INFO, **kwargs) -> logging.LogRecord:
    return logging.LogRecord(
        name=kwargs.pop("name", "test"),
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=kwargs.pop("args", ()),
        exc_info=kwargs.pop("exc_info", None),
    )


def test_json_formatter_produces_valid_json() -> None:
    record = _record("Hello %s", name="test.logger", args=("world",))
    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["level"] == "INFO"
    assert parsed["logger"] == "test.logger"
    assert parsed["message"] == "Hello world"
    assert "timestamp" in parsed


def test_json_formatter_includes_extra_fields() -> None:
    record = _record()
    # What services pass through ``extra=``
    record.course_id = "c-1"  # type: ignore[attr-defined]
    record.user_id = "u-1"  # type: ignore[attr-defined]
    record.metric_type = "course_performance"  # type: ignore[attr-defined]
    record.duration_ms = 12.5  # type: ignore[attr-defined]

    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["course_id"] == "c-1"
    assert parsed["user_id"] == "u-1"
    assert parsed["metric_type"] == "course_performance"
    assert parsed["duration_ms"] == 12.5
    assert "lesson_id" not in parsed


def test_task_filter_stamps_current_task_id() -> None:
    token = task_id_var.set("task-42")
    try:
        record = _record()
        assert _TaskContextFilter().filter(record) is True
    finally:
        task_id_var.reset(token)

    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["task_id"] == "task-42"


def test_placeholder_task_id_is_omitted() -> None:
    record = _record()
    _TaskContextFilter().filter(record)
    assert record.task_id == "-"  # type: ignore[attr-defined]
    assert "task_id" not in json.loads(_JsonFormatter().format(record))


def test_json_formatter_includes_exception_info() -> None:
    try:
        raise ValueError("test error")
    except ValueError:
        record = _record("Something failed", level=logging.ERROR, exc_info=sys.exc_info())
        output = _JsonFormatter().format(record)

    parsed = json.loads(output)
    assert "ValueError: test error" in parsed["exception"]


def test_container_formatter_is_not_json() -> None:
    record = _record("worker started", name="app.worker")
    output = _ContainerFormatter().format(record)
    assert "INFO" in output
    assert "app.worker" in output
    assert "worker started" in output
    assert not output.lstrip().startswith("{")
