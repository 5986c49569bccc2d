"""OpenTelemetry tracing setup for the API process and the ingestion worker."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from ragbot.core.config import TelemetrySettings

logger = logging.getLogger(__name__)

_TRACING_INITIALISED = False


def init_tracing(service_name: str, settings: TelemetrySettings) -> bool:
    """Install an OTLP-exporting tracer provider; returns whether tracing is active.

    The endpoint comes from ``settings`` first, then the standard
    ``OTEL_EXPORTER_OTLP_*`` variables. Without an endpoint tracing stays off and
    the process keeps running.
    """

    global _TRACING_INITIALISED
    if _TRACING_INITIALISED:
        return True

    endpoint = (
        settings.exporter_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    )
    if not endpoint:
        logger.warning(
            "distributed tracing disabled; no OTLP endpoint configured",
            extra={"service_name": service_name},
        )
        return False

    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=ParentBased(TraceIdRatioBased(settings.traces_sample_ratio)),
    )
    exporter = OTLPSpanExporter(
        endpoint=endpoint,
        headers=parse_exporter_headers(settings.exporter_headers),
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    HTTPXClientInstrumentor().instrument()
    _TRACING_INITIALISED = True
    logger.info(
        "tracing initialised",
        extra={
            "service_name": service_name,
            "endpoint": endpoint,
            "sample_ratio": settings.traces_sample_ratio,
        },
    )
    return True


def instrument_fastapi_app(app: FastAPI) -> None:
    """Attach OpenTelemetry instrumentation to a FastAPI application."""

    provider = trace.get_tracer_provider()
    if isinstance(provider, TracerProvider):
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    else:
        FastAPIInstrumentor.instrument_app(app)


def parse_exporter_headers(header_value: str | None) -> dict[str, str] | None:
    """Parse ``key=value,key2=value2`` into a header dict, skipping malformed parts."""

    if not header_value:
        return None

    headers: dict[str, str] = {}
    for part in (segment.strip() for segment in header_value.split(",")):
        if not part:
            continue
        key, sep, value = part.partition("=")
        if not sep:
            logger.warning("ignoring malformed OTLP header segment", extra={"segment": part})
            continue
        headers[key.strip()] = value.strip()
    return headers or None
