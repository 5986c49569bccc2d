"""Drain the vector outbox: embed and upsert chunks, or delete their vectors."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from prometheus_client import Counter, Histogram
from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ragbot.core.db.models import (
    IngestionJob,
    KnowledgeChunk,
    OutboxStatus,
    VectorOperation,
    VectorOutbox,
    utcnow,
)
from ragbot.core.db.session import session_scope
from ragbot.rag.embeddings import EmbeddingsProvider
from ragbot.rag.vector_store import (
    CitationMetadata,
    InvalidCitationError,
    VectorRecord,
    VectorStore,
)
from ragbot.utils.retry import next_attempt_at

from .errors import IngestionError, OutboxOperationError

logger = logging.getLogger(__name__)

OUTBOX_OPERATIONS = Counter(
    "ragbot_outbox_operations_total",
    "Vector outbox operations processed, by operation and outcome.",
    ["operation", "outcome"],
)
OUTBOX_LATENCY = Histogram(
    "ragbot_outbox_operation_seconds",
    "Latency of a single vector outbox operation.",
    ["operation"],
)
OUTBOX_RECLAIMED = Counter(
    "ragbot_outbox_reclaimed_total",
    "RUNNING outbox rows returned to FAILED after their claim expired.",
)

RECLAIMED_ERROR = "reclaimed stale RUNNING outbox item"


@dataclass(slots=True, frozen=True)
class _ClaimedItem:
    id: UUID
    job_id: UUID
    chatbot_id: UUID
    operation: VectorOperation
    chunk_id: str
    attempt: int


class OutboxDrainer:
    """Claims due outbox rows and applies them to the vector index.

    Rows are claimed with a conditional update so concurrent workers never run
    the same row twice. A failed row is rescheduled with exponential backoff
    until ``max_attempts`` is reached, after which it stays FAILED for good.
    """

    def __init__(
        self,
        *,
        engine: Engine,
        embeddings: EmbeddingsProvider,
        vector_store: VectorStore,
        max_attempts: int = 5,
        running_ttl_seconds: int = 300,
        batch_size: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._embeddings = embeddings
        self._vector_store = vector_store
        self._max_attempts = max_attempts
        self._running_ttl = timedelta(seconds=running_ttl_seconds)
        self._batch_size = batch_size
        self._clock = clock

    def reclaim_stale(self) -> int:
        """Return RUNNING rows whose claim outlived the TTL to FAILED, due immediately."""

        now = self._clock()
        with session_scope(self._engine) as session:
            result = session.execute(
                update(VectorOutbox)
                .where(
                    VectorOutbox.status == OutboxStatus.RUNNING.value,
                    VectorOutbox.claimed_at < now - self._running_ttl,  # type: ignore[operator]
                    VectorOutbox.attempt_count < self._max_attempts,
                )
                .values(
                    status=OutboxStatus.FAILED.value,
                    last_error=RECLAIMED_ERROR,
                    next_attempt_at=now,
                    updated_at=now,
                )
            )
            reclaimed = max(result.rowcount or 0, 0)
            # out of attempts: the row becomes a terminal failure instead
            exhausted = session.execute(
                update(VectorOutbox)
                .where(
                    VectorOutbox.status == OutboxStatus.RUNNING.value,
                    VectorOutbox.claimed_at < now - self._running_ttl,  # type: ignore[operator]
                    VectorOutbox.attempt_count >= self._max_attempts,
                )
                .values(
                    status=OutboxStatus.FAILED.value,
                    last_error=RECLAIMED_ERROR,
                    updated_at=now,
                )
            )
            expired = max(exhausted.rowcount or 0, 0)
        if reclaimed or expired:
            OUTBOX_RECLAIMED.inc(reclaimed + expired)
            logger.warning(
                "reclaimed stale outbox items",
                extra={"retryable": reclaimed, "exhausted": expired},
            )
        return reclaimed

    async def drain(self) -> int:
        """Process one batch of due rows. Returns how many rows were attempted."""

        attempted = 0
        for outbox_id in self._due_ids():
            item = self._claim(outbox_id)
            if item is None:
                continue
            attempted += 1
            await self._run(item)
        return attempted

    def _due_ids(self) -> list[UUID]:
        now = self._clock()
        with Session(self._engine) as session:
            return list(
                session.exec(
                    select(VectorOutbox.id)
                    .where(
                        VectorOutbox.status.in_(  # type: ignore[attr-defined]
                            [OutboxStatus.PENDING.value, OutboxStatus.FAILED.value]
                        ),
                        or_(
                            VectorOutbox.next_attempt_at.is_(None),  # type: ignore[union-attr]
                            VectorOutbox.next_attempt_at <= now,  # type: ignore[operator]
                        ),
                        VectorOutbox.attempt_count < self._max_attempts,
                    )
                    .order_by(VectorOutbox.created_at)  # type: ignore[arg-type]
                    .limit(self._batch_size)
                )
            )

    def _claim(self, outbox_id: UUID) -> _ClaimedItem | None:
        now = self._clock()
        with session_scope(self._engine) as session:
            result = session.execute(
                update(VectorOutbox)
                .where(
                    VectorOutbox.id == outbox_id,
                    VectorOutbox.status.in_(  # type: ignore[attr-defined]
                        [OutboxStatus.PENDING.value, OutboxStatus.FAILED.value]
                    ),
                    VectorOutbox.attempt_count < self._max_attempts,
                )
                .values(
                    status=OutboxStatus.RUNNING.value,
                    attempt_count=VectorOutbox.attempt_count + 1,
                    claimed_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                return None
            row = session.get(VectorOutbox, outbox_id)
            if row is None:  # pragma: no cover - claimed rows are never deleted
                return None
            return _ClaimedItem(
                id=row.id,
                job_id=row.job_id,
                chatbot_id=row.chatbot_id,
                operation=VectorOperation(row.operation),
                chunk_id=row.chunk_id,
                attempt=row.attempt_count,
            )

    async def _run(self, item: _ClaimedItem) -> None:
        started = time.perf_counter()
        try:
            if item.operation is VectorOperation.UPSERT:
                await self._upsert(item)
            else:
                await self._delete(item)
        except Exception as exc:
            self._record_failure(item, exc)
        else:
            self._record_success(item)
        finally:
            OUTBOX_LATENCY.labels(item.operation.value).observe(
                time.perf_counter() - started
            )

    async def _upsert(self, item: _ClaimedItem) -> None:
        with Session(self._engine) as session:
            chunk = session.get(KnowledgeChunk, item.chunk_id)
            if chunk is None or chunk.deleted_at is not None:
                raise OutboxOperationError(
                    f"chunk {item.chunk_id} is missing or deleted", retryable=False
                )
            if str(chunk.chatbot_id) != str(item.chatbot_id):
                raise OutboxOperationError(
                    f"chunk {item.chunk_id} belongs to another chatbot", retryable=False
                )
            try:
                metadata = citation_from_chunk(chunk)
            except InvalidCitationError as exc:
                raise OutboxOperationError(str(exc), retryable=False) from exc
            text = chunk.text

        vector = await self._embeddings.embed(text)
        await self._vector_store.upsert(
            VectorRecord(vector_id=metadata.chunk_id, vector=vector, metadata=metadata)
        )

    async def _delete(self, item: _ClaimedItem) -> None:
        with Session(self._engine) as session:
            chunk = session.get(KnowledgeChunk, item.chunk_id)
            # a later revert revived this chunk; its vector belongs to the live row now
            live = chunk is not None and chunk.deleted_at is None
        if live:
            logger.info(
                "skipping vector delete for revived chunk",
                extra={"outbox_id": str(item.id), "chunk_id": item.chunk_id},
            )
            return
        await self._vector_store.delete_by_ids(str(item.chatbot_id), [item.chunk_id])

    def _record_success(self, item: _ClaimedItem) -> None:
        now = self._clock()
        with session_scope(self._engine) as session:
            session.execute(
                update(VectorOutbox)
                .where(VectorOutbox.id == item.id)
                .values(
                    status=OutboxStatus.SUCCEEDED.value,
                    processed_at=now,
                    last_error=None,
                    updated_at=now,
                )
            )
            session.execute(
                update(IngestionJob)
                .where(IngestionJob.id == item.job_id)
                .values(succeeded_vectors=IngestionJob.succeeded_vectors + 1, updated_at=now)
            )
        OUTBOX_OPERATIONS.labels(item.operation.value, "succeeded").inc()

    def _record_failure(self, item: _ClaimedItem, exc: Exception) -> None:
        now = self._clock()
        message = str(exc) or exc.__class__.__name__
        permanent = isinstance(exc, IngestionError) and not exc.retryable
        exhausted = permanent or item.attempt >= self._max_attempts
        with session_scope(self._engine) as session:
            session.execute(
                update(VectorOutbox)
                .where(VectorOutbox.id == item.id)
                .values(
                    status=OutboxStatus.FAILED.value,
                    last_error=message,
                    next_attempt_at=next_attempt_at(now, item.attempt),
                    attempt_count=max(item.attempt, self._max_attempts) if permanent else item.attempt,
                    updated_at=now,
                )
            )
            session.execute(
                update(IngestionJob)
                .where(IngestionJob.id == item.job_id)
                .values(
                    failed_vectors=IngestionJob.failed_vectors + 1,
                    error=message,
                    updated_at=now,
                )
            )
        OUTBOX_OPERATIONS.labels(item.operation.value, "failed").inc()
        logger.warning(
            "outbox operation failed",
            extra={
                "outbox_id": str(item.id),
                "job_id": str(item.job_id),
                "operation": item.operation.value,
                "attempt": item.attempt,
                "exhausted": exhausted,
                "error": message,
            },
        )


def citation_from_chunk(chunk: KnowledgeChunk) -> CitationMetadata:
    """Rebuild the vector payload from a manifest row; raises on missing anchors."""

    return CitationMetadata(
        chatbot_id=str(chunk.chatbot_id),
        chunk_id=chunk.chunk_id,
        source_id=str(chunk.knowledge_source_id),
        source_type=str(getattr(chunk.source_type, "value", chunk.source_type)),
        source_revision=chunk.source_revision,
        start_offset=chunk.start_offset,
        end_offset=chunk.end_offset,
        embedding_model=chunk.embedding_model,
        embedding_dimensions=chunk.embedding_dimensions,
        uri=chunk.uri,
        canonical_url=chunk.canonical_url,
        original_url=chunk.original_url,
        extraction_method=chunk.extraction_method,
        text_quality=chunk.text_quality,
        title=chunk.title,
        page_no=chunk.page_no,
    )
