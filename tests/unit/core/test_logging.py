from __future__ import annotations

import json
import logging

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from ragbot.core.logging import _stdlib_handler, configure_logging, get_logger

pytestmark = pytest.mark.unit


def test_structlog_injects_trace_context(capsys) -> None:
    configure_logging()

    trace.set_tracer_provider(TracerProvider())
    tracer = trace.get_tracer(__name__)

    logger = get_logger("test")

    with tracer.start_as_current_span("logging-test"):
        logger.info("log_event", component="test")

    captured = capsys.readouterr().out.strip().splitlines()
    assert captured

    record = json.loads(captured[-1])
    assert record["event"] == "log_event"
    assert record["component"] == "test"
    assert record["level"] == "info"
    assert "timestamp" in record
    assert "trace_id" in record and len(record["trace_id"]) == 32
    assert "span_id" in record and len(record["span_id"]) == 16


def test_stdlib_records_render_as_json_with_extra() -> None:
    formatter = _stdlib_handler().formatter
    record = logging.LogRecord(
        name="ragbot.tests",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="outbox item failed",
        args=None,
        exc_info=None,
    )
    record.attempt = 3

    rendered = json.loads(formatter.format(record))

    assert rendered["event"] == "outbox item failed"
    assert rendered["attempt"] == 3
    assert rendered["level"] == "warning"
    assert rendered["logger"] == "ragbot.tests"
    assert "timestamp" in rendered
