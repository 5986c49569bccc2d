"""Claim PENDING ingestion jobs and stage their sources into the outbox."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

import pydantic
from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ragbot.core.db.models import (
    ChunkSourceType,
    IngestionJob,
    IngestionJobKind,
    IngestionJobStatus,
    KnowledgeSource,
    KnowledgeSourceStatus,
    KnowledgeSourceType,
    utcnow,
)
from ragbot.core.db.session import session_scope
from ragbot.rag.canonicalize import canonicalize
from ragbot.rag.chunk_id import PageText

from .errors import IngestionError, StagingError
from .events import ProvisioningEvent, ProvisioningEventPublisher
from .models import (
    DeleteSourceJobPayload,
    PageItem,
    PdfItem,
    ScrapeJobPayload,
    TextJobPayload,
)
from .scraper import DatasetItem, ScraperRunner
from .staging import ChunkStager, PreparedSource, SourceDocument, stage_source_deletion

logger = logging.getLogger(__name__)

JOBS_STAGED = Counter(
    "ragbot_ingestion_jobs_staged_total",
    "Ingestion jobs whose sources were staged, by kind and outcome.",
    ["kind", "outcome"],
)

Clock = Callable[[], datetime]


@dataclass(slots=True)
class _ScrapeSource:
    """A scraped document resolved to its (possibly not yet persisted) source row."""

    knowledge_source_id: UUID
    exists: bool
    type: KnowledgeSourceType
    label: str
    prepared: PreparedSource


class JobProcessor:
    """Runs the staging phase of one job at a time.

    A job leaves this class either RUNNING with ``staged_at`` set (vectors are
    then handled by the outbox) or FAILED with its sources marked FAILED.
    """

    def __init__(
        self,
        *,
        engine: Engine,
        stager: ChunkStager,
        publisher: ProvisioningEventPublisher,
        scraper: ScraperRunner | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._engine = engine
        self._stager = stager
        self._publisher = publisher
        self._scraper = scraper
        self._clock = clock

    async def run_next(self) -> UUID | None:
        """Claim the oldest PENDING job and stage it. Returns the job id, if any."""

        job_id = self.claim_next()
        if job_id is None:
            return None
        await self.process(job_id)
        return job_id

    def claim_next(self) -> UUID | None:
        with session_scope(self._engine) as session:
            candidates = list(
                session.exec(
                    select(IngestionJob.id)
                    .where(IngestionJob.status == IngestionJobStatus.PENDING.value)
                    .order_by(IngestionJob.created_at)  # type: ignore[arg-type]
                    .limit(5)
                )
            )
            for job_id in candidates:
                result = session.execute(
                    update(IngestionJob)
                    .where(
                        IngestionJob.id == job_id,
                        IngestionJob.status == IngestionJobStatus.PENDING.value,
                    )
                    .values(status=IngestionJobStatus.RUNNING.value, started_at=self._clock())
                )
                if result.rowcount == 1:
                    logger.info("ingestion job claimed", extra={"job_id": str(job_id)})
                    return job_id
        return None

    async def process(self, job_id: UUID) -> None:
        with Session(self._engine) as session:
            job = session.get(IngestionJob, job_id)
            if job is None:
                return
            kind = IngestionJobKind(job.kind)
            payload = dict(job.payload or {})
            chatbot_id = job.chatbot_id
            knowledge_source_id = job.knowledge_source_id

        try:
            if kind is IngestionJobKind.TEXT:
                self._process_text(job_id, chatbot_id, knowledge_source_id, payload)
            elif kind is IngestionJobKind.SCRAPE:
                await self._process_scrape(job_id, chatbot_id, payload)
            else:
                self._process_delete(job_id, knowledge_source_id, payload)
        except (IngestionError, pydantic.ValidationError) as exc:
            await self._fail(job_id, kind, str(exc))
            return
        except Exception as exc:
            logger.exception("unexpected error while staging job", extra={"job_id": str(job_id)})
            await self._fail(job_id, kind, f"staging failed: {exc}")
            return

        JOBS_STAGED.labels(kind.value, "staged").inc()
        logger.info("ingestion job staged", extra={"job_id": str(job_id), "kind": kind.value})

    def _process_text(
        self,
        job_id: UUID,
        chatbot_id: UUID,
        knowledge_source_id: UUID | None,
        payload: dict[str, object],
    ) -> None:
        text_payload = TextJobPayload.model_validate(payload)
        source_id = knowledge_source_id or UUID(text_payload.knowledge_source_id)
        with Session(self._engine) as session:
            source = session.get(KnowledgeSource, source_id)
            if source is None:
                raise StagingError("knowledge source not found", retryable=False)
            uri = source.uri

        prepared = self._stager.prepare(
            SourceDocument(
                knowledge_source_id=source_id,
                chatbot_id=chatbot_id,
                source_type=ChunkSourceType.TEXT,
                title=text_payload.title,
                uri=uri,
                canonical_url=text_payload.canonical_url,
                original_url=text_payload.original_url,
                extraction_method=text_payload.extraction_method,
                text_quality=text_payload.text_quality,
                text=text_payload.content,
            )
        )
        with session_scope(self._engine) as session:
            job = self._require_job(session, job_id)
            now = self._clock()
            self._stager.stage(session, job=job, prepared=prepared, now=now)
            job.staged_at = now
            session.add(job)

    def _process_delete(
        self,
        job_id: UUID,
        knowledge_source_id: UUID | None,
        payload: dict[str, object],
    ) -> None:
        source_id = knowledge_source_id or UUID(
            DeleteSourceJobPayload.model_validate(payload).knowledge_source_id
        )
        with session_scope(self._engine) as session:
            job = self._require_job(session, job_id)
            now = self._clock()
            removed = stage_source_deletion(
                session, job=job, knowledge_source_id=source_id, now=now
            )
            job.staged_at = now
            session.add(job)
        logger.info(
            "source deletion staged",
            extra={"job_id": str(job_id), "knowledge_source_id": str(source_id), "chunks": removed},
        )

    async def _process_scrape(
        self, job_id: UUID, chatbot_id: UUID, payload: dict[str, object]
    ) -> None:
        options = ScrapeJobPayload.model_validate(payload).options
        if self._scraper is None:
            raise StagingError("scraper is not configured", retryable=False)
        items = await self._scraper.run(options)

        # every document is prepared before the first write
        resolved = self._prepare_scrape(chatbot_id, items)
        if not resolved or not any(entry.prepared.rows for entry in resolved):
            raise StagingError("Scrape job produced no ingestible content", retryable=False)

        for entry in resolved:
            with session_scope(self._engine) as session:
                job = self._require_job(session, job_id)
                self._upsert_scrape_source(session, chatbot_id, job_id, entry)
                self._stager.stage(session, job=job, prepared=entry.prepared, now=self._clock())

        with session_scope(self._engine) as session:
            job = self._require_job(session, job_id)
            job.staged_at = self._clock()
            session.add(job)

    def _prepare_scrape(self, chatbot_id: UUID, items: list[DatasetItem]) -> list[_ScrapeSource]:
        pages: list[PageItem] = []
        pdfs: dict[str, PdfItem] = {}
        for item in items:
            if isinstance(item, PageItem):
                pages.append(item)
                for pdf in item.pdfs:
                    pdfs.setdefault(pdf.pdf_url, pdf)
            else:
                pdfs.setdefault(item.pdf_url, item)

        resolved: list[_ScrapeSource] = []
        seen_uris: set[str] = set()
        with Session(self._engine) as session:
            for page in pages:
                uri = page.canonical_url or page.page_url
                if uri in seen_uris or not canonicalize(page.main_text or ""):
                    continue
                seen_uris.add(uri)
                source_id, exists = _resolve_source_id(session, chatbot_id, uri)
                document = SourceDocument(
                    knowledge_source_id=source_id,
                    chatbot_id=chatbot_id,
                    source_type=ChunkSourceType.WEB,
                    title=page.title,
                    uri=uri,
                    canonical_url=page.canonical_url,
                    original_url=page.page_url,
                    text=page.main_text,
                )
                resolved.append(
                    _ScrapeSource(
                        knowledge_source_id=source_id,
                        exists=exists,
                        type=KnowledgeSourceType.URL,
                        label=page.title or uri,
                        prepared=self._stager.prepare(document),
                    )
                )

            for pdf in pdfs.values():
                if pdf.pdf_url in seen_uris:
                    continue
                page_texts = _pdf_pages(pdf)
                if page_texts is None:
                    continue
                seen_uris.add(pdf.pdf_url)
                source_id, exists = _resolve_source_id(session, chatbot_id, pdf.pdf_url)
                document = SourceDocument(
                    knowledge_source_id=source_id,
                    chatbot_id=chatbot_id,
                    source_type=ChunkSourceType.PDF,
                    title=pdf.title,
                    uri=pdf.pdf_url,
                    original_url=pdf.pdf_url,
                    extraction_method=pdf.extraction_method,
                    text_quality=pdf.text_quality,
                    pages=page_texts,
                )
                resolved.append(
                    _ScrapeSource(
                        knowledge_source_id=source_id,
                        exists=exists,
                        type=KnowledgeSourceType.FILE,
                        label=pdf.title or pdf.pdf_url,
                        prepared=self._stager.prepare(document),
                    )
                )
        return resolved

    @staticmethod
    def _upsert_scrape_source(
        session: Session, chatbot_id: UUID, job_id: UUID, entry: _ScrapeSource
    ) -> None:
        document = entry.prepared.document
        source = session.get(KnowledgeSource, entry.knowledge_source_id) if entry.exists else None
        if source is None:
            source = KnowledgeSource(
                id=entry.knowledge_source_id,
                chatbot_id=chatbot_id,
                label=entry.label,
                type=entry.type,
                uri=document.uri or "",
            )
        source.label = entry.label
        source.status = KnowledgeSourceStatus.PENDING
        source.last_ingestion_job_id = job_id
        session.add(source)
        session.flush()

    async def _fail(self, job_id: UUID, kind: IngestionJobKind, message: str) -> None:
        now = self._clock()
        with session_scope(self._engine) as session:
            job = self._require_job(session, job_id)
            job.status = IngestionJobStatus.FAILED
            job.error = message
            job.finished_at = now
            session.add(job)

            if kind is IngestionJobKind.SCRAPE or job.knowledge_source_id is None:
                sources = session.exec(
                    select(KnowledgeSource).where(KnowledgeSource.last_ingestion_job_id == job_id)
                )
            else:
                source = session.get(KnowledgeSource, job.knowledge_source_id)
                sources = [source] if source is not None else []
            for source in sources:
                source.status = KnowledgeSourceStatus.FAILED
                session.add(source)
            chatbot_id = str(job.chatbot_id)

        JOBS_STAGED.labels(kind.value, "failed").inc()
        logger.warning(
            "ingestion job failed during staging",
            extra={"job_id": str(job_id), "kind": kind.value, "error": message},
        )
        await self._publisher.publish(
            ProvisioningEvent(
                type="failed",
                chatbot_id=chatbot_id,
                job_id=str(job_id),
                status=IngestionJobStatus.FAILED.value,
                error=message,
            )
        )

    @staticmethod
    def _require_job(session: Session, job_id: UUID) -> IngestionJob:
        job = session.get(IngestionJob, job_id)
        if job is None:
            raise StagingError("ingestion job disappeared while staging", retryable=False)
        return job


def _resolve_source_id(session: Session, chatbot_id: UUID, uri: str) -> tuple[UUID, bool]:
    existing = session.exec(
        select(KnowledgeSource.id).where(
            KnowledgeSource.chatbot_id == chatbot_id,
            KnowledgeSource.uri == uri,
        )
    ).first()
    if existing is not None:
        return existing, True
    return uuid4(), False


def _pdf_pages(pdf: PdfItem) -> list[PageText] | None:
    """Per-page text for a PDF, or ``None`` when it carries nothing to ingest.

    Flattened text without pages cannot be cited by page, so it fails the job.
    """

    if pdf.pages:
        texts = [PageText(page_no=page.page_no, text=page.text) for page in pdf.pages]
        if not any(canonicalize(page.text) for page in texts):
            return None
        return texts
    if pdf.perplexity_content and pdf.perplexity_content.strip():
        raise StagingError(
            f"pdf {pdf.pdf_url} is missing pages[]; cannot synthesize required page anchors",
            retryable=False,
        )
    return None
