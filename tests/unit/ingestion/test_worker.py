from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest
from sqlmodel import Session

from ragbot.core.config import AppSettings, IngestionSettings
from ragbot.core.db import models
from ragbot.ingestion.events import InMemoryProvisioningPublisher
from ragbot.ingestion.queue import IngestionQueue
from ragbot.ingestion.worker import IngestionWorker, build_parser, build_worker
from ragbot.rag.embeddings import DeterministicEmbeddingsProvider
from ragbot.rag.vector_store import InMemoryVectorStore

pytestmark = pytest.mark.unit


@dataclass
class RecordingStep:
    name: str
    calls: list[str]
    error: Exception | None = None
    gate: asyncio.Event | None = None

    async def __call__(self) -> None:
        self.calls.append(self.name)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error


@dataclass
class StubDrainer:
    calls: list[str]
    drain: RecordingStep = field(init=False)

    def __post_init__(self) -> None:
        self.drain = RecordingStep("drain", self.calls)

    def reclaim_stale(self) -> int:
        self.calls.append("reclaim")
        return 0


@dataclass
class StubProcessor:
    run_next: RecordingStep


@dataclass
class StubFinalizer:
    finalize: RecordingStep


def _worker(calls: list[str], *, stage_error: Exception | None = None, gate=None) -> IngestionWorker:
    return IngestionWorker(
        processor=StubProcessor(RecordingStep("stage", calls, error=stage_error, gate=gate)),  # type: ignore[arg-type]
        drainer=StubDrainer(calls),  # type: ignore[arg-type]
        finalizer=StubFinalizer(RecordingStep("finalize", calls)),  # type: ignore[arg-type]
    )


@pytest.mark.asyncio
async def test_tick_runs_steps_in_order() -> None:
    calls: list[str] = []

    assert await _worker(calls).tick() is True

    assert calls == ["reclaim", "stage", "drain", "finalize"]


@pytest.mark.asyncio
async def test_step_errors_do_not_stop_the_tick(caplog) -> None:
    calls: list[str] = []

    await _worker(calls, stage_error=RuntimeError("db down")).tick()

    assert calls == ["reclaim", "stage", "drain", "finalize"]
    assert any("ingestion worker step failed" in record.message for record in caplog.records)


@pytest.mark.asyncio
async def test_ticks_never_overlap() -> None:
    calls: list[str] = []
    gate = asyncio.Event()
    worker = _worker(calls, gate=gate)

    first = asyncio.create_task(worker.tick())
    await asyncio.sleep(0)
    assert await worker.tick() is False

    gate.set()
    assert await first is True
    assert calls.count("stage") == 1


@pytest.mark.asyncio
async def test_start_and_stop_schedule_ticks() -> None:
    worker = _worker([])

    worker.start()
    assert worker.running
    worker.stop()

    assert not worker.running


@pytest.mark.asyncio
async def test_built_worker_ingests_text_end_to_end(engine, chatbot_id, clock) -> None:
    settings = AppSettings(ingestion=IngestionSettings(chunk_size=200, chunk_overlap=20))
    store = InMemoryVectorStore()
    publisher = InMemoryProvisioningPublisher()
    worker = build_worker(
        settings,
        engine=engine,
        embeddings=DeterministicEmbeddingsProvider(),
        vector_store=store,
        publisher=publisher,
        clock=clock,
    )
    enqueued = IngestionQueue(engine).enqueue_text_job(
        chatbot_id=chatbot_id, title="Hours", content="We are open from 9 to 5 on weekdays."
    )

    await worker.tick()

    with Session(engine) as session:
        job = session.get(models.IngestionJob, enqueued.job_id)
    assert job.status == models.IngestionJobStatus.SUCCEEDED
    assert job.succeeded_vectors == 1
    assert store.count(str(chatbot_id)) == 1
    assert [event.type for event in publisher.events] == ["completed"]


def test_parser_flags() -> None:
    args = build_parser().parse_args(["--once", "--init-db", "--log-level", "DEBUG"])

    assert args.once and args.init_db
    assert args.log_level == "DEBUG"
