"""Background ingestion worker: staging, outbox draining and finalization on a poll loop."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from prometheus_client import Counter, Histogram, start_http_server
from sqlalchemy.engine import Engine

from ragbot.core.config import AppSettings
from ragbot.core.db.models import utcnow
from ragbot.core.db.session import create_engine_from_settings, init_db
from ragbot.core.logging import configure_logging
from ragbot.core.telemetry import init_tracing
from ragbot.rag.chunking import ChunkingConfig
from ragbot.rag.embeddings import EmbeddingsProvider, create_embeddings_provider
from ragbot.rag.vector_store import VectorStore, create_vector_store

from .events import ProvisioningEventPublisher, create_event_publisher
from .finalizer import JobFinalizer
from .jobs import JobProcessor
from .outbox import OutboxDrainer
from .scraper import ScraperRunner, create_scraper_runner
from .staging import ChunkStager

logger = logging.getLogger(__name__)

SERVICE_NAME = "ragbot-ingestion-worker"

WORKER_TICK_LATENCY = Histogram(
    "ragbot_ingestion_tick_seconds",
    "Duration of one ingestion worker tick.",
)
WORKER_STEP_FAILURES = Counter(
    "ragbot_ingestion_step_failures_total",
    "Unexpected errors raised by a worker step.",
    ["step"],
)


class IngestionWorker:
    """Runs one tick at a time: reclaim, stage one job, drain, finalize.

    Ticks never overlap within a process, and an error in one step is logged
    without stopping the remaining steps or the schedule.
    """

    def __init__(
        self,
        *,
        processor: JobProcessor,
        drainer: OutboxDrainer,
        finalizer: JobFinalizer,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.processor = processor
        self.drainer = drainer
        self.finalizer = finalizer
        self._poll_interval = poll_interval_seconds
        self._scheduler: AsyncIOScheduler | None = None
        self._in_flight = False

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def tick(self) -> bool:
        """Run one pass. Returns ``False`` when a previous tick is still running."""

        if self._in_flight:
            return False
        self._in_flight = True
        started = time.perf_counter()
        try:
            await self._step("reclaim", self._reclaim)
            await self._step("stage", self.processor.run_next)
            await self._step("drain", self.drainer.drain)
            await self._step("finalize", self.finalizer.finalize)
        finally:
            self._in_flight = False
            WORKER_TICK_LATENCY.observe(time.perf_counter() - started)
        return True

    async def _reclaim(self) -> int:
        return self.drainer.reclaim_stale()

    async def _step(self, name: str, step: Callable[[], Awaitable[object]]) -> None:
        try:
            await step()
        except Exception:
            WORKER_STEP_FAILURES.labels(name).inc()
            logger.exception("ingestion worker step failed", extra={"step": name})

    def start(self) -> None:
        """Schedule ticks on the running event loop."""

        if self.running:
            return
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self.tick,
            "interval",
            seconds=self._poll_interval,
            max_instances=1,
            coalesce=True,
            next_run_time=utcnow(),
            id="ingestion-tick",
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "ingestion worker started", extra={"poll_interval_seconds": self._poll_interval}
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("ingestion worker stopped")


def build_worker(
    settings: AppSettings,
    *,
    engine: Engine | None = None,
    embeddings: EmbeddingsProvider | None = None,
    vector_store: VectorStore | None = None,
    publisher: ProvisioningEventPublisher | None = None,
    scraper: ScraperRunner | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> IngestionWorker:
    """Wire a worker from settings; any collaborator can be passed in instead."""

    engine = engine or create_engine_from_settings(settings)
    embeddings = embeddings or create_embeddings_provider(settings)
    vector_store = vector_store or create_vector_store(settings)
    publisher = publisher or create_event_publisher(
        settings.redis.url, settings.redis.channel_template
    )
    if scraper is None:
        scraper = create_scraper_runner(settings.scraper)

    ingestion = settings.ingestion
    stager = ChunkStager(
        chunking=ChunkingConfig(
            chunk_size=ingestion.chunk_size, chunk_overlap=ingestion.chunk_overlap
        ),
        embedding_model=embeddings.model,
        embedding_dimensions=embeddings.dimensions,
    )
    return IngestionWorker(
        processor=JobProcessor(
            engine=engine,
            stager=stager,
            publisher=publisher,
            scraper=scraper,
            clock=clock,
        ),
        drainer=OutboxDrainer(
            engine=engine,
            embeddings=embeddings,
            vector_store=vector_store,
            max_attempts=ingestion.max_vector_attempts,
            running_ttl_seconds=ingestion.outbox_running_ttl_seconds,
            batch_size=ingestion.outbox_batch_size,
            clock=clock,
        ),
        finalizer=JobFinalizer(
            engine=engine,
            publisher=publisher,
            max_attempts=ingestion.max_vector_attempts,
            running_ttl_seconds=ingestion.outbox_running_ttl_seconds,
            batch_size=ingestion.finalize_batch_size,
            clock=clock,
        ),
        poll_interval_seconds=ingestion.poll_interval_seconds,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the knowledge ingestion worker.")
    parser.add_argument(
        "--once", action="store_true", help="Run a single tick and exit."
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Create missing tables before starting."
    )
    parser.add_argument("--log-level", default="INFO")
    return parser


async def _run(args: argparse.Namespace) -> None:
    settings = AppSettings.load()
    init_tracing(SERVICE_NAME, settings.telemetry)
    engine = create_engine_from_settings(settings)
    if args.init_db:
        init_db(engine)
    worker = build_worker(settings, engine=engine)

    if args.once:
        await worker.tick()
        return

    if settings.telemetry.metrics_port:
        start_http_server(
            settings.telemetry.metrics_port, addr=settings.telemetry.metrics_host
        )
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    worker.start()
    try:
        await shutdown.wait()
    finally:
        worker.stop()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, service=SERVICE_NAME)
    asyncio.run(_run(args))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
