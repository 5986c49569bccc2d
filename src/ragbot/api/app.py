"""FastAPI application factory for the ragbot service."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from ragbot import __version__
from ragbot.core.config import AppSettings
from ragbot.core.errors import CoreError
from ragbot.core.logging import configure_logging
from ragbot.core.middleware import RequestContextMiddleware, metrics_response
from ragbot.core.telemetry import init_tracing, instrument_fastapi_app

from .dependencies import get_ingestion_worker, get_settings
from .routers import chat, knowledge
from .schemas import HealthResponse

logger = logging.getLogger(__name__)

SERVICE_NAME = "ragbot-api"

SettingsDep = Annotated[AppSettings, Depends(get_settings)]


async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request failed",
            extra={"path": request.url.path, "code": exc.code, "error": exc.message},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(*, run_worker: bool | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    The ingestion worker runs inside the API process when
    ``INGESTION_WORKER_ENABLED`` is true, unless ``run_worker`` overrides it.
    """

    settings = get_settings()
    configure_logging(service=SERVICE_NAME)
    init_tracing(SERVICE_NAME, settings.telemetry)
    start_worker = settings.ingestion.worker_enabled if run_worker is None else run_worker

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        worker = get_ingestion_worker() if start_worker else None
        if worker is not None:
            worker.start()
        try:
            yield
        finally:
            if worker is not None:
                worker.stop()

    app = FastAPI(title="Ragbot Service", version=__version__, lifespan=lifespan)

    instrument_fastapi_app(app)
    app.add_middleware(RequestContextMiddleware, service_name=SERVICE_NAME)
    app.add_exception_handler(CoreError, core_error_handler)  # type: ignore[arg-type]

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    def health(_: SettingsDep) -> HealthResponse:
        return HealthResponse()

    app.include_router(knowledge.router)
    app.include_router(chat.router)

    @app.get("/metrics")
    async def metrics() -> Response:
        return metrics_response()

    return app
