"""JSON logging for the API and the worker.

structlog loggers render directly. Records from stdlib ``logging`` loggers
(which the ingestion and chat modules use, passing fields through ``extra``)
go through the same processors so both end up as one JSON line each.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any

import structlog

from ragbot.utils.tracing import get_current_trace_ids

_CONFIGURED = False


def _add_trace_ids(
    _: Any,
    __: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    for key, value in get_current_trace_ids().items():
        event_dict.setdefault(key, value)
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        _add_trace_ids,
    ]


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _stdlib_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[
                *_shared_processors(),
                structlog.stdlib.add_logger_name,
                structlog.stdlib.ExtraAdder(),
            ],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    return handler


def configure_logging(level: int | str = logging.INFO, *, service: str | None = None) -> None:
    """Configure structlog and route stdlib records through it.

    ``service`` is bound as a context variable so every event carries the
    process it came from. Calling this again only rebinds ``service``.
    """

    global _CONFIGURED
    if service:
        structlog.contextvars.bind_contextvars(service=service)
    if _CONFIGURED:
        return

    numeric_level = _resolve_level(level)
    root = logging.getLogger()
    root.addHandler(_stdlib_handler())
    root.setLevel(numeric_level)

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    configure_logging()
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)
