"""Turn source content into chunk manifests and outbox rows, one transaction per source.

Preparation (canonicalize, chunk, hash, validate anchors) is pure and happens
before any write, so a malformed document never leaves partial rows behind.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import update
from sqlmodel import Session, select

from ragbot.core.db.models import (
    ChunkSourceType,
    IngestionJob,
    KnowledgeChunk,
    KnowledgeSource,
    KnowledgeSourceStatus,
    OutboxStatus,
    VectorOperation,
    VectorOutbox,
)
from ragbot.core.db.session import insert_ignore
from ragbot.rag.canonicalize import canonicalize
from ragbot.rag.chunk_id import (
    PageText,
    compute_chunk_id,
    compute_pdf_source_revision,
    compute_source_revision,
    estimate_token_count,
    sha256_hex,
)
from ragbot.rag.chunking import AnchoredChunk, ChunkingConfig, chunk_text
from ragbot.rag.vector_store import CitationMetadata, InvalidCitationError

from .errors import CitationIntegrityError, StagingError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceDocument:
    """Content of one knowledge source as handed to staging.

    Exactly one of ``text`` (flat documents) or ``pages`` (PDFs) is set.
    """

    knowledge_source_id: UUID
    chatbot_id: UUID
    source_type: ChunkSourceType
    title: str | None = None
    uri: str | None = None
    canonical_url: str | None = None
    original_url: str | None = None
    extraction_method: str | None = None
    text_quality: str | None = None
    text: str | None = None
    pages: Sequence[PageText] | None = None


@dataclass(slots=True)
class PreparedSource:
    document: SourceDocument
    revision: str
    rows: list[dict[str, object]] = field(default_factory=list)

    @property
    def chunk_ids(self) -> list[str]:
        return [str(row["chunk_id"]) for row in self.rows]


@dataclass(slots=True, frozen=True)
class StagingResult:
    knowledge_source_id: UUID
    revision: str
    upserts: int
    deletes: int


class ChunkStager:
    """Prepares and stages chunk manifests for the configured embedding model."""

    def __init__(
        self,
        *,
        chunking: ChunkingConfig,
        embedding_model: str,
        embedding_dimensions: int,
    ) -> None:
        self._chunking = chunking
        self._embedding_model = embedding_model
        self._embedding_dimensions = embedding_dimensions

    def prepare(self, document: SourceDocument) -> PreparedSource:
        """Canonicalize, chunk and hash ``document`` without touching the database."""

        if document.pages is not None:
            revision, anchored = self._prepare_pages(document.pages)
        else:
            canonical = canonicalize(document.text or "")
            if not canonical:
                raise StagingError("source has no text after canonicalization", retryable=False)
            revision = compute_source_revision(canonical)
            anchored = [(None, chunk) for chunk in self._chunk(canonical)]

        prepared = PreparedSource(document=document, revision=revision)
        for page_no, chunk in anchored:
            prepared.rows.append(self._build_row(document, revision, page_no, chunk))
        return prepared

    def _prepare_pages(
        self, pages: Sequence[PageText]
    ) -> tuple[str, list[tuple[int | None, AnchoredChunk]]]:
        canonical_pages = [
            PageText(page_no=page.page_no, text=canonicalize(page.text)) for page in pages
        ]
        non_empty = [page for page in canonical_pages if page.text]
        if not non_empty:
            raise StagingError("pdf has no page text after canonicalization", retryable=False)
        revision = compute_pdf_source_revision(non_empty)
        anchored: list[tuple[int | None, AnchoredChunk]] = []
        for page in sorted(non_empty, key=lambda item: item.page_no):
            anchored.extend((page.page_no, chunk) for chunk in self._chunk(page.text))
        return revision, anchored

    def _chunk(self, canonical: str) -> list[AnchoredChunk]:
        try:
            return chunk_text(canonical, self._chunking)
        except ValueError as exc:
            raise StagingError(f"chunking failed: {exc}", retryable=False) from exc

    def _build_row(
        self,
        document: SourceDocument,
        revision: str,
        page_no: int | None,
        chunk: AnchoredChunk,
    ) -> dict[str, object]:
        chunk_id = compute_chunk_id(
            source_id=str(document.knowledge_source_id),
            source_revision=revision,
            page_no=page_no,
            chunk=chunk,
        )
        try:
            citation = CitationMetadata(
                chatbot_id=str(document.chatbot_id),
                chunk_id=chunk_id,
                source_id=str(document.knowledge_source_id),
                source_type=document.source_type.value,
                source_revision=revision,
                start_offset=chunk.start_offset,
                end_offset=chunk.end_offset,
                embedding_model=self._embedding_model,
                embedding_dimensions=self._embedding_dimensions,
                uri=document.uri,
                canonical_url=document.canonical_url,
                original_url=document.original_url,
                extraction_method=document.extraction_method,
                text_quality=document.text_quality,
                title=document.title,
                page_no=page_no,
            )
        except InvalidCitationError as exc:
            raise CitationIntegrityError(str(exc), retryable=False) from exc

        return {
            "chunk_id": citation.chunk_id,
            "chatbot_id": document.chatbot_id,
            "knowledge_source_id": document.knowledge_source_id,
            "source_type": document.source_type.value,
            "uri": citation.uri,
            "canonical_url": citation.canonical_url,
            "original_url": citation.original_url,
            "extraction_method": citation.extraction_method,
            "text_quality": citation.text_quality,
            "title": citation.title,
            "source_revision": revision,
            "page_no": page_no,
            "start_offset": chunk.start_offset,
            "end_offset": chunk.end_offset,
            "text": chunk.text,
            "text_hash": sha256_hex(chunk.text),
            "embedding_model": self._embedding_model,
            "embedding_dimensions": self._embedding_dimensions,
            "token_count": estimate_token_count(chunk.text),
        }

    def stage(
        self,
        session: Session,
        *,
        job: IngestionJob,
        prepared: PreparedSource,
        now: datetime,
    ) -> StagingResult:
        """Write the prepared chunk set for one source inside the caller's transaction.

        Prior active chunks are soft-deleted (with a DELETE outbox row each) only
        when the revision changed. New chunk rows and UPSERT rows skip duplicates,
        so re-ingesting identical content stages nothing new.
        """

        document = prepared.document
        source = session.get(KnowledgeSource, document.knowledge_source_id)
        if source is None:
            raise StagingError("knowledge source not found", retryable=False)

        active_ids = list(
            session.exec(
                select(KnowledgeChunk.chunk_id).where(
                    KnowledgeChunk.knowledge_source_id == source.id,
                    KnowledgeChunk.deleted_at.is_(None),  # type: ignore[union-attr]
                )
            )
        )
        deletes: list[str] = []
        if active_ids and source.current_revision != prepared.revision:
            deletes = soft_delete_chunks(session, job=job, chunk_ids=active_ids, now=now)

        stamped = [
            {**row, "created_by_job_id": job.id, "updated_by_job_id": job.id, "created_at": now, "updated_at": now}
            for row in prepared.rows
        ]
        insert_ignore(session, KnowledgeChunk, stamped)
        # rows superseded earlier and now current again (content reverted)
        session.execute(
            update(KnowledgeChunk)
            .where(
                KnowledgeChunk.chunk_id.in_(prepared.chunk_ids),  # type: ignore[attr-defined]
                KnowledgeChunk.deleted_at.is_not(None),  # type: ignore[union-attr]
            )
            .values(deleted_at=None, updated_by_job_id=job.id, updated_at=now)
        )
        enqueue_outbox(session, job=job, operation=VectorOperation.UPSERT, chunk_ids=prepared.chunk_ids, now=now)

        source.status = KnowledgeSourceStatus.PENDING
        source.current_revision = prepared.revision
        source.last_ingestion_job_id = job.id
        for field_name in ("canonical_url", "original_url", "extraction_method", "text_quality"):
            value = getattr(document, field_name)
            if value is not None:
                setattr(source, field_name, value)
        session.add(source)

        job.total_chunks = (job.total_chunks or 0) + len(prepared.rows)
        session.add(job)

        logger.info(
            "source staged",
            extra={
                "job_id": str(job.id),
                "knowledge_source_id": str(source.id),
                "revision": prepared.revision,
                "chunks": len(prepared.rows),
                "superseded": len(deletes),
            },
        )
        return StagingResult(
            knowledge_source_id=source.id,
            revision=prepared.revision,
            upserts=len(prepared.rows),
            deletes=len(deletes),
        )


def soft_delete_chunks(
    session: Session,
    *,
    job: IngestionJob,
    chunk_ids: Sequence[str],
    now: datetime,
) -> list[str]:
    """Soft-delete ``chunk_ids`` and queue a DELETE outbox row for each."""

    if not chunk_ids:
        return []
    session.execute(
        update(KnowledgeChunk)
        .where(KnowledgeChunk.chunk_id.in_(list(chunk_ids)))  # type: ignore[attr-defined]
        .values(deleted_at=now, updated_by_job_id=job.id, updated_at=now)
    )
    enqueue_outbox(session, job=job, operation=VectorOperation.DELETE, chunk_ids=chunk_ids, now=now)
    return list(chunk_ids)


def stage_source_deletion(session: Session, *, job: IngestionJob, knowledge_source_id: UUID, now: datetime) -> int:
    """Soft-delete every active chunk of a source ahead of removing the source row."""

    source = session.get(KnowledgeSource, knowledge_source_id)
    if source is None:
        raise StagingError("knowledge source not found", retryable=False)
    active_ids = list(
        session.exec(
            select(KnowledgeChunk.chunk_id).where(
                KnowledgeChunk.knowledge_source_id == source.id,
                KnowledgeChunk.deleted_at.is_(None),  # type: ignore[union-attr]
            )
        )
    )
    soft_delete_chunks(session, job=job, chunk_ids=active_ids, now=now)
    source.status = KnowledgeSourceStatus.PENDING
    source.last_ingestion_job_id = job.id
    session.add(source)
    return len(active_ids)


def enqueue_outbox(
    session: Session,
    *,
    job: IngestionJob,
    operation: VectorOperation,
    chunk_ids: Sequence[str],
    now: datetime,
) -> None:
    rows = [
        {
            "id": uuid4(),
            "job_id": job.id,
            "chatbot_id": job.chatbot_id,
            "operation": operation.value,
            "chunk_id": chunk_id,
            "status": OutboxStatus.PENDING.value,
            "attempt_count": 0,
            "next_attempt_at": now,
            "created_at": now,
            "updated_at": now,
        }
        for chunk_id in chunk_ids
    ]
    insert_ignore(session, VectorOutbox, rows)
