from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest
from sqlalchemy import update
from sqlmodel import Session, select

from ragbot.core.db import models
from ragbot.core.db.session import session_scope
from ragbot.ingestion.events import InMemoryProvisioningPublisher
from ragbot.ingestion.jobs import JobProcessor
from ragbot.ingestion.outbox import RECLAIMED_ERROR, OutboxDrainer
from ragbot.ingestion.queue import IngestionQueue
from ragbot.ingestion.staging import ChunkStager
from ragbot.rag.chunking import ChunkingConfig
from ragbot.rag.embeddings import DeterministicEmbeddingsProvider
from ragbot.rag.vector_store import InMemoryVectorStore, VectorRecord

pytestmark = pytest.mark.unit


@dataclass
class FlakyVectorStore:
    """Fails the first ``failures`` upserts, then behaves like the in-memory index."""

    failures: int = 1
    upserts: list[VectorRecord] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    async def upsert(self, record: VectorRecord) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("index unavailable")
        self.upserts.append(record)

    async def similarity_search(self, namespace: str, vector: Sequence[float], top_k: int):
        return []

    async def delete_by_ids(self, namespace: str, ids: Sequence[str]) -> None:
        self.deleted.extend(ids)

    async def delete_by_namespace(self, namespace: str) -> None:
        return None


async def _staged_text_job(engine, chatbot_id: UUID, clock, content: str = "Open 9 to 5.") -> UUID:
    enqueued = IngestionQueue(engine).enqueue_text_job(
        chatbot_id=chatbot_id, title="Hours", content=content
    )
    processor = JobProcessor(
        engine=engine,
        stager=ChunkStager(
            chunking=ChunkingConfig(),
            embedding_model=DeterministicEmbeddingsProvider.model,
            embedding_dimensions=DeterministicEmbeddingsProvider.dimensions,
        ),
        publisher=InMemoryProvisioningPublisher(),
        clock=clock,
    )
    await processor.run_next()
    return enqueued.job_id


def _drainer(engine, clock, vector_store, max_attempts: int = 3) -> OutboxDrainer:
    return OutboxDrainer(
        engine=engine,
        embeddings=DeterministicEmbeddingsProvider(),
        vector_store=vector_store,
        max_attempts=max_attempts,
        running_ttl_seconds=60,
        clock=clock,
    )


def _rows(engine, job_id: UUID) -> list[models.VectorOutbox]:
    with Session(engine) as session:
        return list(
            session.exec(select(models.VectorOutbox).where(models.VectorOutbox.job_id == job_id))
        )


@pytest.mark.asyncio
async def test_drain_upserts_vectors_with_citation_payload(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    store = InMemoryVectorStore()

    assert await _drainer(engine, clock, store).drain() == 1

    (row,) = _rows(engine, job_id)
    assert row.status == models.OutboxStatus.SUCCEEDED
    assert row.attempt_count == 1
    assert row.processed_at is not None
    matches = await store.similarity_search(
        str(chatbot_id), await DeterministicEmbeddingsProvider().embed("Open 9 to 5."), top_k=5
    )
    assert [match.id for match in matches] == [row.chunk_id]
    assert matches[0].metadata["chatbotId"] == str(chatbot_id)
    assert matches[0].metadata["source_type"] == "text"
    with Session(engine) as session:
        assert session.get(models.IngestionJob, job_id).succeeded_vectors == 1


@pytest.mark.asyncio
async def test_failed_upsert_is_retried_after_backoff(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    store = FlakyVectorStore(failures=1)
    drainer = _drainer(engine, clock, store)

    await drainer.drain()

    (row,) = _rows(engine, job_id)
    assert row.status == models.OutboxStatus.FAILED
    assert row.attempt_count == 1
    assert row.last_error == "index unavailable"
    assert _as_utc(row.next_attempt_at) == clock() + timedelta(seconds=1)
    with Session(engine) as session:
        job = session.get(models.IngestionJob, job_id)
    assert job.failed_vectors == 1
    assert job.error == "index unavailable"

    assert await drainer.drain() == 0

    clock.advance(5)
    assert await drainer.drain() == 1
    (row,) = _rows(engine, job_id)
    assert row.status == models.OutboxStatus.SUCCEEDED
    assert row.attempt_count == 2
    assert len(store.upserts) == 1


@pytest.mark.asyncio
async def test_retry_delay_doubles_with_each_failed_attempt(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    drainer = _drainer(engine, clock, FlakyVectorStore(failures=10), max_attempts=5)

    delays = []
    for _ in range(3):
        assert await drainer.drain() == 1
        (row,) = _rows(engine, job_id)
        delays.append(_as_utc(row.next_attempt_at) - clock())
        clock.advance(delays[-1].total_seconds() + 0.5)

    assert delays == [timedelta(seconds=1), timedelta(seconds=2), timedelta(seconds=4)]


@pytest.mark.asyncio
async def test_rows_stop_after_max_attempts(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    drainer = _drainer(engine, clock, FlakyVectorStore(failures=10), max_attempts=2)

    await drainer.drain()
    clock.advance(60)
    await drainer.drain()
    clock.advance(60)

    assert await drainer.drain() == 0
    (row,) = _rows(engine, job_id)
    assert row.status == models.OutboxStatus.FAILED
    assert row.attempt_count == 2


@pytest.mark.asyncio
async def test_orphaned_chunk_fails_permanently(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    with session_scope(engine) as session:
        session.execute(update(models.KnowledgeChunk).values(deleted_at=clock()))

    await _drainer(engine, clock, InMemoryVectorStore(), max_attempts=3).drain()

    (row,) = _rows(engine, job_id)
    assert row.status == models.OutboxStatus.FAILED
    assert row.attempt_count == 3
    assert "missing or deleted" in (row.last_error or "")


@pytest.mark.asyncio
async def test_stale_running_rows_are_reclaimed(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    drainer = _drainer(engine, clock, InMemoryVectorStore())
    (row,) = _rows(engine, job_id)
    drainer._claim(row.id)

    assert drainer.reclaim_stale() == 0
    clock.advance(61)
    assert drainer.reclaim_stale() == 1

    (row,) = _rows(engine, job_id)
    assert row.status == models.OutboxStatus.FAILED
    assert row.last_error == RECLAIMED_ERROR
    assert await drainer.drain() == 1
    assert _rows(engine, job_id)[0].status == models.OutboxStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_delete_rows_remove_vectors(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    store = FlakyVectorStore(failures=0)
    drainer = _drainer(engine, clock, store)
    await drainer.drain()
    (upsert,) = _rows(engine, job_id)

    deletion = IngestionQueue(engine).enqueue_delete_source_job(
        chatbot_id=chatbot_id,
        knowledge_source_id=_source_id(engine, chatbot_id),
    )
    processor = JobProcessor(
        engine=engine,
        stager=ChunkStager(
            chunking=ChunkingConfig(), embedding_model="m", embedding_dimensions=1024
        ),
        publisher=InMemoryProvisioningPublisher(),
        clock=clock,
    )
    await processor.run_next()
    await drainer.drain()

    assert store.deleted == [upsert.chunk_id]
    assert _rows(engine, deletion.job_id)[0].status == models.OutboxStatus.SUCCEEDED


def _source_id(engine, chatbot_id: UUID) -> UUID:
    with Session(engine) as session:
        return session.exec(
            select(models.KnowledgeSource.id).where(
                models.KnowledgeSource.chatbot_id == chatbot_id
            )
        ).one()


@pytest.mark.asyncio
async def test_delete_row_keeps_vector_of_revived_chunk(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    store = FlakyVectorStore(failures=0)
    drainer = _drainer(engine, clock, store)
    await drainer.drain()
    (upsert,) = _rows(engine, job_id)

    deletion = IngestionQueue(engine).enqueue_delete_source_job(
        chatbot_id=chatbot_id,
        knowledge_source_id=_source_id(engine, chatbot_id),
    )
    processor = JobProcessor(
        engine=engine,
        stager=ChunkStager(
            chunking=ChunkingConfig(), embedding_model="m", embedding_dimensions=1024
        ),
        publisher=InMemoryProvisioningPublisher(),
        clock=clock,
    )
    await processor.run_next()
    # a revert lands before the queued delete is drained
    with session_scope(engine) as session:
        session.execute(
            update(models.KnowledgeChunk)
            .where(models.KnowledgeChunk.chunk_id == upsert.chunk_id)
            .values(deleted_at=None)
        )

    assert await drainer.drain() == 1

    assert store.deleted == []
    (row,) = _rows(engine, deletion.job_id)
    assert row.status == models.OutboxStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_invalid_citation_fails_without_retry(engine, chatbot_id, clock) -> None:
    job_id = await _staged_text_job(engine, chatbot_id, clock)
    with session_scope(engine) as session:
        session.execute(update(models.KnowledgeChunk).values(end_offset=0))
    store = FlakyVectorStore(failures=0)
    drainer = _drainer(engine, clock, store, max_attempts=3)

    assert await drainer.drain() == 1

    (row,) = _rows(engine, job_id)
    assert row.status == models.OutboxStatus.FAILED
    assert row.attempt_count == 3
    assert "invalid offsets" in (row.last_error or "")
    clock.advance(120)
    assert await drainer.drain() == 0
    assert store.upserts == []


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands timestamps back without tzinfo
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
