"""Derive terminal job status from the outbox and apply its side effects."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import delete, func, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ragbot.core.db.models import (
    Chatbot,
    ChatbotStatus,
    IngestionJob,
    IngestionJobKind,
    IngestionJobStatus,
    KnowledgeChunk,
    KnowledgeSource,
    KnowledgeSourceStatus,
    OutboxStatus,
    VectorOutbox,
    utcnow,
)
from ragbot.core.db.session import session_scope

from .events import ProvisioningEvent, ProvisioningEventPublisher

logger = logging.getLogger(__name__)

JOBS_FINALIZED = Counter(
    "ragbot_ingestion_jobs_finalized_total",
    "Ingestion jobs moved to a terminal status by the finalizer.",
    ["kind", "status"],
)

STUCK_JOB_ERROR = "Job stuck in RUNNING before staging completed"


@dataclass(slots=True)
class OutboxTally:
    """Outbox row counts for one job, split the way finalization needs them."""

    total: int = 0
    in_flight: int = 0
    retryable_failed: int = 0
    terminal_failed: int = 0
    succeeded: int = 0


@dataclass(slots=True, frozen=True)
class FinalizedJob:
    job_id: UUID
    status: IngestionJobStatus


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class JobFinalizer:
    """Closes RUNNING jobs once none of their outbox rows can change any more.

    A job with rows still PENDING, RUNNING or FAILED-with-attempts-left is left
    alone. Otherwise it becomes SUCCEEDED, or PARTIAL_FAILED when any row
    exhausted its attempts.
    """

    def __init__(
        self,
        *,
        engine: Engine,
        publisher: ProvisioningEventPublisher,
        max_attempts: int = 5,
        running_ttl_seconds: int = 300,
        batch_size: int = 20,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._publisher = publisher
        self._max_attempts = max_attempts
        self._running_ttl = timedelta(seconds=running_ttl_seconds)
        self._batch_size = batch_size
        self._clock = clock

    async def finalize(self) -> list[FinalizedJob]:
        with Session(self._engine) as session:
            job_ids = list(
                session.exec(
                    select(IngestionJob.id)
                    .where(IngestionJob.status == IngestionJobStatus.RUNNING.value)
                    .order_by(IngestionJob.created_at)  # type: ignore[arg-type]
                    .limit(self._batch_size)
                )
            )

        finalized: list[FinalizedJob] = []
        for job_id in job_ids:
            outcome = self._finalize_job(job_id)
            if outcome is None:
                continue
            finalized.append(outcome[0])
            await self._publisher.publish(outcome[1])
        return finalized

    def tally(self, session: Session, job_id: UUID) -> OutboxTally:
        rows = session.execute(
            select(
                VectorOutbox.status,
                VectorOutbox.attempt_count < self._max_attempts,
                func.count(),
            )
            .where(VectorOutbox.job_id == job_id)
            .group_by(VectorOutbox.status, VectorOutbox.attempt_count < self._max_attempts)
        ).all()

        tally = OutboxTally()
        for status, has_attempts_left, count in rows:
            tally.total += count
            if status in (OutboxStatus.PENDING, OutboxStatus.RUNNING):
                tally.in_flight += count
            elif status == OutboxStatus.FAILED:
                if has_attempts_left:
                    tally.retryable_failed += count
                else:
                    tally.terminal_failed += count
            else:
                tally.succeeded += count
        return tally

    def _finalize_job(self, job_id: UUID) -> tuple[FinalizedJob, ProvisioningEvent] | None:
        now = self._clock()
        with session_scope(self._engine) as session:
            job = session.get(IngestionJob, job_id)
            if job is None or job.status != IngestionJobStatus.RUNNING:
                return None

            tally = self.tally(session, job_id)
            error = job.error
            if job.staged_at is None:
                # staging never finished, e.g. a crash between claim and the last write
                started_at = _as_utc(job.started_at)
                if started_at is None or started_at >= now - self._running_ttl:
                    return None
                status = IngestionJobStatus.FAILED
                error = STUCK_JOB_ERROR
            elif tally.total == 0:
                # nothing to index or remove, e.g. deleting a source with no chunks
                status = IngestionJobStatus.SUCCEEDED
            elif tally.in_flight or tally.retryable_failed:
                return None
            elif tally.terminal_failed:
                status = IngestionJobStatus.PARTIAL_FAILED
            else:
                status = IngestionJobStatus.SUCCEEDED

            result = session.execute(
                update(IngestionJob)
                .where(
                    IngestionJob.id == job_id,
                    IngestionJob.status == IngestionJobStatus.RUNNING.value,
                )
                .values(status=status.value, error=error, finished_at=now, updated_at=now)
            )
            if result.rowcount != 1:
                return None

            kind = IngestionJobKind(job.kind)
            self._apply_source_effects(session, job, kind, status, now)
            if status is IngestionJobStatus.SUCCEEDED and kind is not IngestionJobKind.DELETE_SOURCE:
                chatbot = session.get(Chatbot, job.chatbot_id)
                if chatbot is not None and chatbot.status != ChatbotStatus.ACTIVE:
                    chatbot.status = ChatbotStatus.ACTIVE
                    session.add(chatbot)

            event = ProvisioningEvent(
                type="completed" if status is IngestionJobStatus.SUCCEEDED else "failed",
                chatbot_id=str(job.chatbot_id),
                job_id=str(job_id),
                status=status.value,
                error=None if status is IngestionJobStatus.SUCCEEDED else error,
            )

        JOBS_FINALIZED.labels(kind.value, status.value).inc()
        logger.info(
            "ingestion job finalized",
            extra={
                "job_id": str(job_id),
                "kind": kind.value,
                "status": status.value,
                "outbox_total": tally.total,
                "outbox_failed": tally.terminal_failed,
            },
        )
        return FinalizedJob(job_id=job_id, status=status), event

    @staticmethod
    def _apply_source_effects(
        session: Session,
        job: IngestionJob,
        kind: IngestionJobKind,
        status: IngestionJobStatus,
        now: datetime,
    ) -> None:
        if kind is IngestionJobKind.DELETE_SOURCE:
            source = session.get(KnowledgeSource, job.knowledge_source_id) if job.knowledge_source_id else None
            if source is None:
                return
            if status is IngestionJobStatus.SUCCEEDED:
                session.execute(
                    delete(KnowledgeChunk).where(
                        KnowledgeChunk.knowledge_source_id == source.id  # type: ignore[arg-type]
                    )
                )
                session.delete(source)
            else:
                source.status = KnowledgeSourceStatus.FAILED
                session.add(source)
            return

        # a later job may have taken over the source; only touch ours
        sources = session.exec(
            select(KnowledgeSource).where(KnowledgeSource.last_ingestion_job_id == job.id)
        ).all()
        for source in sources:
            if status is IngestionJobStatus.SUCCEEDED:
                source.status = KnowledgeSourceStatus.READY
                source.last_ingested_at = now
            else:
                source.status = KnowledgeSourceStatus.FAILED
            session.add(source)
