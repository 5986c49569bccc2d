from __future__ import annotations

from uuid import UUID

import pytest
from sqlmodel import Session, select

from ragbot.core.db import models
from ragbot.ingestion.events import InMemoryProvisioningPublisher
from ragbot.ingestion.jobs import JobProcessor
from ragbot.ingestion.models import PageItem, PdfItem, PdfPage, ScrapeOptions
from ragbot.ingestion.queue import IngestionQueue
from ragbot.ingestion.staging import ChunkStager
from ragbot.rag.chunking import ChunkingConfig

pytestmark = pytest.mark.unit


class StubScraper:
    def __init__(self, items: list[PageItem | PdfItem]) -> None:
        self.items = items
        self.calls: list[ScrapeOptions] = []

    async def run(self, options: ScrapeOptions) -> list[PageItem | PdfItem]:
        self.calls.append(options)
        return self.items


def _processor(engine, clock, scraper=None) -> tuple[JobProcessor, InMemoryProvisioningPublisher]:
    publisher = InMemoryProvisioningPublisher()
    processor = JobProcessor(
        engine=engine,
        stager=ChunkStager(
            chunking=ChunkingConfig(chunk_size=200, chunk_overlap=40),
            embedding_model="deterministic_test_v1",
            embedding_dimensions=1024,
        ),
        publisher=publisher,
        scraper=scraper,
        clock=clock,
    )
    return processor, publisher


def _job(engine, job_id: UUID) -> models.IngestionJob:
    with Session(engine) as session:
        job = session.get(models.IngestionJob, job_id)
    assert job is not None
    return job


def _sources(engine, chatbot_id: UUID) -> list[models.KnowledgeSource]:
    with Session(engine) as session:
        return list(
            session.exec(
                select(models.KnowledgeSource).where(
                    models.KnowledgeSource.chatbot_id == chatbot_id
                )
            )
        )


def _scrape_job(engine, chatbot_id: UUID) -> UUID:
    options = ScrapeOptions.model_validate({"startUrls": ["https://acme.example/"]})
    return IngestionQueue(engine).enqueue_scrape_job(chatbot_id=chatbot_id, options=options).job_id


@pytest.mark.asyncio
async def test_text_job_is_claimed_and_staged(engine, chatbot_id, clock) -> None:
    enqueued = IngestionQueue(engine).enqueue_text_job(
        chatbot_id=chatbot_id, title="Hours", content="We are open from 9 to 5 on weekdays."
    )
    processor, publisher = _processor(engine, clock)

    assert await processor.run_next() == enqueued.job_id

    job = _job(engine, enqueued.job_id)
    assert job.status == models.IngestionJobStatus.RUNNING
    assert job.started_at is not None and job.staged_at is not None
    assert job.total_chunks == 1
    assert publisher.events == []
    assert await processor.run_next() is None


def test_claim_is_conditional(engine, chatbot_id, clock) -> None:
    queue = IngestionQueue(engine)
    queue.enqueue_text_job(chatbot_id=chatbot_id, title="One", content="first")
    processor, _ = _processor(engine, clock)
    other, _ = _processor(engine, clock)

    claimed = processor.claim_next()

    assert claimed is not None
    assert other.claim_next() is None


@pytest.mark.asyncio
async def test_blank_text_fails_job_and_source(engine, chatbot_id, clock) -> None:
    enqueued = IngestionQueue(engine).enqueue_text_job(
        chatbot_id=chatbot_id, title="Junk", content="\x00\x01 \x02"
    )
    processor, publisher = _processor(engine, clock)

    await processor.run_next()

    job = _job(engine, enqueued.job_id)
    assert job.status == models.IngestionJobStatus.FAILED
    assert job.error == "source has no text after canonicalization"
    assert job.finished_at is not None
    (source,) = _sources(engine, chatbot_id)
    assert source.status == models.KnowledgeSourceStatus.FAILED
    assert [event.type for event in publisher.events] == ["failed"]
    with Session(engine) as session:
        assert session.exec(select(models.VectorOutbox)).all() == []


@pytest.mark.asyncio
async def test_scrape_job_stages_pages_and_pdfs(engine, chatbot_id, clock) -> None:
    scraper = StubScraper(
        [
            PageItem(
                page_url="https://acme.example/help?ref=nav",
                canonical_url="https://acme.example/help",
                title="Help",
                main_text="Contact support through the help form.",
                pdfs=[
                    PdfItem(
                        pdf_url="https://acme.example/manual.pdf",
                        title="Manual",
                        pages=[PdfPage(page_no=1, text="Install the device.")],
                    )
                ],
            ),
            PageItem(page_url="https://acme.example/empty", main_text="   "),
            PdfItem(
                pdf_url="https://acme.example/manual.pdf",
                pages=[PdfPage(page_no=1, text="Duplicate entry.")],
            ),
        ]
    )
    job_id = _scrape_job(engine, chatbot_id)
    processor, _ = _processor(engine, clock, scraper=scraper)

    await processor.run_next()

    job = _job(engine, job_id)
    assert job.status == models.IngestionJobStatus.RUNNING
    assert job.staged_at is not None
    assert job.total_chunks == 2
    assert scraper.calls[0].start_urls == ["https://acme.example/"]
    sources = {source.uri: source for source in _sources(engine, chatbot_id)}
    assert set(sources) == {"https://acme.example/help", "https://acme.example/manual.pdf"}
    assert sources["https://acme.example/help"].type == models.KnowledgeSourceType.URL
    assert sources["https://acme.example/manual.pdf"].type == models.KnowledgeSourceType.FILE
    with Session(engine) as session:
        pdf_chunk = session.exec(
            select(models.KnowledgeChunk).where(
                models.KnowledgeChunk.source_type == models.ChunkSourceType.PDF.value
            )
        ).one()
    assert pdf_chunk.page_no == 1
    assert pdf_chunk.text == "Install the device."


@pytest.mark.asyncio
async def test_pdf_without_pages_fails_scrape_before_any_write(engine, chatbot_id, clock) -> None:
    scraper = StubScraper(
        [
            PageItem(page_url="https://acme.example/a", main_text="Some page text."),
            PdfItem(
                pdf_url="https://acme.example/flat.pdf",
                perplexity_content="Flattened text without page anchors.",
            ),
        ]
    )
    job_id = _scrape_job(engine, chatbot_id)
    processor, publisher = _processor(engine, clock, scraper=scraper)

    await processor.run_next()

    job = _job(engine, job_id)
    assert job.status == models.IngestionJobStatus.FAILED
    assert "missing pages[]" in (job.error or "")
    assert _sources(engine, chatbot_id) == []
    assert publisher.events[0].status == "failed"


@pytest.mark.asyncio
async def test_scrape_without_content_fails(engine, chatbot_id, clock) -> None:
    job_id = _scrape_job(engine, chatbot_id)
    processor, _ = _processor(engine, clock, scraper=StubScraper([]))

    await processor.run_next()

    job = _job(engine, job_id)
    assert job.status == models.IngestionJobStatus.FAILED
    assert job.error == "Scrape job produced no ingestible content"


@pytest.mark.asyncio
async def test_scrape_without_configured_scraper_fails(engine, chatbot_id, clock) -> None:
    job_id = _scrape_job(engine, chatbot_id)
    processor, _ = _processor(engine, clock)

    await processor.run_next()

    assert _job(engine, job_id).error == "scraper is not configured"


@pytest.mark.asyncio
async def test_delete_source_job_soft_deletes_chunks(engine, chatbot_id, clock) -> None:
    queue = IngestionQueue(engine)
    text = queue.enqueue_text_job(
        chatbot_id=chatbot_id, title="Hours", content="We are open from 9 to 5 on weekdays."
    )
    processor, _ = _processor(engine, clock)
    await processor.run_next()

    deletion = queue.enqueue_delete_source_job(
        chatbot_id=chatbot_id, knowledge_source_id=text.knowledge_source_id
    )
    assert await processor.run_next() == deletion.job_id

    job = _job(engine, deletion.job_id)
    assert job.staged_at is not None
    with Session(engine) as session:
        rows = session.exec(
            select(models.VectorOutbox).where(models.VectorOutbox.job_id == deletion.job_id)
        ).all()
        chunks = session.exec(select(models.KnowledgeChunk)).all()
    assert [row.operation for row in rows] == [models.VectorOperation.DELETE.value]
    assert all(chunk.deleted_at is not None for chunk in chunks)
