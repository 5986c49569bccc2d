from __future__ import annotations

import logging
from typing import Any

import pytest

from ragbot.core import telemetry
from ragbot.core.config import TelemetrySettings
from ragbot.core.telemetry import init_tracing, parse_exporter_headers

pytestmark = pytest.mark.unit


def test_parse_exporter_headers_handles_malformed_segments() -> None:
    headers = parse_exporter_headers("authorization=Bearer token,invalid,env=prod")
    assert headers == {"authorization": "Bearer token", "env": "prod"}


def test_parse_exporter_headers_empty_value() -> None:
    assert parse_exporter_headers(None) is None
    assert parse_exporter_headers(" , ") is None


def test_init_tracing_logs_warning_when_endpoint_missing(monkeypatch, caplog) -> None:
    monkeypatch.setattr(telemetry, "_TRACING_INITIALISED", False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)

    caplog.set_level(logging.WARNING)

    enabled = init_tracing("test-service", TelemetrySettings(exporter_endpoint=None))

    assert enabled is False
    assert any(
        "distributed tracing disabled" in record.message for record in caplog.records
    )


def test_init_tracing_logs_success_when_endpoint_supplied(monkeypatch, caplog) -> None:
    class DummyExporter:  # pragma: no cover - simple stub
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            self.args = args
            self.kwargs = kwargs

    class DummyProcessor:  # pragma: no cover - simple stub
        def __init__(self, exporter: DummyExporter) -> None:
            self.exporter = exporter

        def on_start(self, *args: Any, **kwargs: Any) -> None:
            return None

        def on_end(self, *args: Any, **kwargs: Any) -> None:
            return None

        def shutdown(self) -> None:
            return None

        def force_flush(self, timeout_millis: int = 30000) -> bool:
            return True

    class DummyInstrumentor:
        def instrument(self) -> None:
            return None

    monkeypatch.setattr(telemetry, "OTLPSpanExporter", DummyExporter)
    monkeypatch.setattr(telemetry, "BatchSpanProcessor", DummyProcessor)
    monkeypatch.setattr(telemetry, "HTTPXClientInstrumentor", DummyInstrumentor)
    monkeypatch.setattr(telemetry.trace, "set_tracer_provider", lambda provider: None)
    monkeypatch.setattr(telemetry, "_TRACING_INITIALISED", False)

    caplog.set_level(logging.INFO)

    enabled = init_tracing(
        "test-service",
        TelemetrySettings(exporter_endpoint="http://collector:4318/v1/traces"),
    )

    assert enabled is True
    assert telemetry._TRACING_INITIALISED is True
    assert any("tracing initialised" in record.message for record in caplog.records)
