from __future__ import annotations

from uuid import UUID

import pytest
from sqlalchemy import update
from sqlmodel import Session, select

from ragbot.core.db import models
from ragbot.core.db.session import session_scope
from ragbot.ingestion.events import InMemoryProvisioningPublisher
from ragbot.ingestion.finalizer import STUCK_JOB_ERROR, JobFinalizer
from ragbot.ingestion.jobs import JobProcessor
from ragbot.ingestion.queue import IngestionQueue
from ragbot.ingestion.staging import ChunkStager
from ragbot.rag.chunking import ChunkingConfig

pytestmark = pytest.mark.unit

MAX_ATTEMPTS = 3


def _processor(engine, clock, publisher) -> JobProcessor:
    return JobProcessor(
        engine=engine,
        stager=ChunkStager(
            chunking=ChunkingConfig(), embedding_model="m", embedding_dimensions=1024
        ),
        publisher=publisher,
        clock=clock,
    )


def _finalizer(engine, clock, publisher) -> JobFinalizer:
    return JobFinalizer(
        engine=engine,
        publisher=publisher,
        max_attempts=MAX_ATTEMPTS,
        running_ttl_seconds=60,
        clock=clock,
    )


async def _staged_text_job(engine, chatbot_id: UUID, clock, publisher) -> tuple[UUID, UUID]:
    enqueued = IngestionQueue(engine).enqueue_text_job(
        chatbot_id=chatbot_id, title="Hours", content="Open 9 to 5."
    )
    await _processor(engine, clock, publisher).run_next()
    return enqueued.job_id, enqueued.knowledge_source_id


def _set_outbox(engine, job_id: UUID, **values) -> None:
    with session_scope(engine) as session:
        session.execute(
            update(models.VectorOutbox)
            .where(models.VectorOutbox.job_id == job_id)
            .values(**values)
        )


def _get(engine, model, key):
    with Session(engine) as session:
        return session.get(model, key)


@pytest.mark.asyncio
async def test_job_stays_running_while_outbox_is_in_flight(engine, chatbot_id, clock) -> None:
    publisher = InMemoryProvisioningPublisher()
    job_id, _ = await _staged_text_job(engine, chatbot_id, clock, publisher)

    assert await _finalizer(engine, clock, publisher).finalize() == []

    _set_outbox(engine, job_id, status=models.OutboxStatus.FAILED.value, attempt_count=1)
    assert await _finalizer(engine, clock, publisher).finalize() == []
    assert _get(engine, models.IngestionJob, job_id).status == models.IngestionJobStatus.RUNNING


@pytest.mark.asyncio
async def test_all_succeeded_finalizes_job_source_and_chatbot(engine, chatbot_id, clock) -> None:
    publisher = InMemoryProvisioningPublisher()
    job_id, source_id = await _staged_text_job(engine, chatbot_id, clock, publisher)
    _set_outbox(engine, job_id, status=models.OutboxStatus.SUCCEEDED.value, attempt_count=1)

    finalized = await _finalizer(engine, clock, publisher).finalize()

    assert [item.status for item in finalized] == [models.IngestionJobStatus.SUCCEEDED]
    job = _get(engine, models.IngestionJob, job_id)
    assert job.status == models.IngestionJobStatus.SUCCEEDED
    assert job.finished_at is not None
    source = _get(engine, models.KnowledgeSource, source_id)
    assert source.status == models.KnowledgeSourceStatus.READY
    assert source.last_ingested_at is not None
    assert _get(engine, models.Chatbot, chatbot_id).status == models.ChatbotStatus.ACTIVE
    (event,) = publisher.events
    assert event.type == "completed"
    assert event.job_id == str(job_id)
    assert event.error is None


@pytest.mark.asyncio
async def test_exhausted_rows_yield_partial_failure(engine, chatbot_id, clock) -> None:
    publisher = InMemoryProvisioningPublisher()
    job_id, source_id = await _staged_text_job(engine, chatbot_id, clock, publisher)
    _set_outbox(
        engine,
        job_id,
        status=models.OutboxStatus.FAILED.value,
        attempt_count=MAX_ATTEMPTS,
        last_error="index unavailable",
    )

    await _finalizer(engine, clock, publisher).finalize()

    assert _get(engine, models.IngestionJob, job_id).status == models.IngestionJobStatus.PARTIAL_FAILED
    assert _get(engine, models.KnowledgeSource, source_id).status == models.KnowledgeSourceStatus.FAILED
    assert _get(engine, models.Chatbot, chatbot_id).status == models.ChatbotStatus.DRAFT
    (event,) = publisher.events
    assert event.type == "failed"
    assert event.status == "partial_failed"


@pytest.mark.asyncio
async def test_job_without_outbox_rows_fails_after_ttl(engine, chatbot_id, clock) -> None:
    publisher = InMemoryProvisioningPublisher()
    enqueued = IngestionQueue(engine).enqueue_text_job(
        chatbot_id=chatbot_id, title="Hours", content="Open 9 to 5."
    )
    # claimed but never staged, as if the worker crashed in between
    assert _processor(engine, clock, publisher).claim_next() == enqueued.job_id
    finalizer = _finalizer(engine, clock, publisher)

    assert await finalizer.finalize() == []
    clock.advance(61)
    await finalizer.finalize()

    job = _get(engine, models.IngestionJob, enqueued.job_id)
    assert job.status == models.IngestionJobStatus.FAILED
    assert job.error == STUCK_JOB_ERROR
    assert publisher.events[-1].error == STUCK_JOB_ERROR


@pytest.mark.asyncio
async def test_partially_staged_job_fails_after_ttl(engine, chatbot_id, clock) -> None:
    publisher = InMemoryProvisioningPublisher()
    job_id, source_id = await _staged_text_job(engine, chatbot_id, clock, publisher)
    # outbox rows exist but the crash hit before staging was marked complete
    with session_scope(engine) as session:
        session.execute(
            update(models.IngestionJob)
            .where(models.IngestionJob.id == job_id)
            .values(staged_at=None)
        )
    _set_outbox(engine, job_id, status=models.OutboxStatus.SUCCEEDED.value, attempt_count=1)
    finalizer = _finalizer(engine, clock, publisher)

    assert await finalizer.finalize() == []
    assert _get(engine, models.IngestionJob, job_id).status == models.IngestionJobStatus.RUNNING

    clock.advance(61)
    finalized = await finalizer.finalize()

    assert [item.status for item in finalized] == [models.IngestionJobStatus.FAILED]
    job = _get(engine, models.IngestionJob, job_id)
    assert job.error == STUCK_JOB_ERROR
    assert _get(engine, models.KnowledgeSource, source_id).status == models.KnowledgeSourceStatus.FAILED
    assert publisher.events[-1].type == "failed"


@pytest.mark.asyncio
async def test_successful_delete_source_job_hard_deletes_source(engine, chatbot_id, clock) -> None:
    publisher = InMemoryProvisioningPublisher()
    text_job, source_id = await _staged_text_job(engine, chatbot_id, clock, publisher)
    _set_outbox(engine, text_job, status=models.OutboxStatus.SUCCEEDED.value)
    await _finalizer(engine, clock, publisher).finalize()

    deletion = IngestionQueue(engine).enqueue_delete_source_job(
        chatbot_id=chatbot_id, knowledge_source_id=source_id
    )
    await _processor(engine, clock, publisher).run_next()
    _set_outbox(engine, deletion.job_id, status=models.OutboxStatus.SUCCEEDED.value)

    finalized = await _finalizer(engine, clock, publisher).finalize()

    assert [item.job_id for item in finalized] == [deletion.job_id]
    assert _get(engine, models.KnowledgeSource, source_id) is None
    with Session(engine) as session:
        assert session.exec(select(models.KnowledgeChunk)).all() == []
    assert _get(engine, models.IngestionJob, deletion.job_id).status == models.IngestionJobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_deleting_a_source_without_chunks_succeeds(engine, chatbot_id, clock) -> None:
    publisher = InMemoryProvisioningPublisher()
    source = models.KnowledgeSource(
        chatbot_id=chatbot_id, label="Empty", type=models.KnowledgeSourceType.TEXT, uri="text:x"
    )
    with session_scope(engine) as session:
        session.add(source)
        session.flush()
        source_id = source.id
    deletion = IngestionQueue(engine).enqueue_delete_source_job(
        chatbot_id=chatbot_id, knowledge_source_id=source_id
    )
    await _processor(engine, clock, publisher).run_next()

    await _finalizer(engine, clock, publisher).finalize()

    assert _get(engine, models.IngestionJob, deletion.job_id).status == models.IngestionJobStatus.SUCCEEDED
    assert _get(engine, models.KnowledgeSource, source_id) is None
