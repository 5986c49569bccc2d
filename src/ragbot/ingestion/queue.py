"""Enqueue ingestion jobs and read back their progress."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ragbot.core.db.models import (
    Chatbot,
    IngestionJob,
    IngestionJobKind,
    IngestionJobStatus,
    KnowledgeSource,
    KnowledgeSourceStatus,
    KnowledgeSourceType,
)
from ragbot.core.db.session import session_scope
from ragbot.core.errors import NotFoundError, ValidationError
from ragbot.rag.chunk_id import sha256_hex

from .models import DeleteSourceJobPayload, ScrapeJobPayload, ScrapeOptions, TextJobPayload

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class EnqueuedJob:
    job_id: UUID
    knowledge_source_id: UUID | None = None


class JobSnapshot(BaseModel):
    """Read-only view of an ingestion job returned to pollers."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    chatbot_id: UUID
    kind: str
    status: str
    knowledge_source_id: UUID | None
    total_chunks: int
    succeeded_vectors: int
    failed_vectors: int
    error: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


def text_source_uri(chatbot_id: UUID | str, stable_key: str) -> str:
    """Stable uri for pasted text so re-submitting the same key updates one source."""

    return "text:" + sha256_hex(f"{chatbot_id}\n{stable_key}")


class IngestionQueue:
    """Creates PENDING jobs; the worker picks them up on its next tick."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def enqueue_text_job(
        self,
        *,
        chatbot_id: UUID,
        title: str,
        content: str,
        source_key: str | None = None,
        requested_by: str | None = None,
        canonical_url: str | None = None,
        original_url: str | None = None,
        extraction_method: str | None = None,
        text_quality: str | None = None,
    ) -> EnqueuedJob:
        """Upsert the TEXT source and create its job in one transaction."""

        stable_key = (source_key or title).strip()
        if not stable_key:
            raise ValidationError("title or source_key must be non-empty")
        if not content.strip():
            raise ValidationError("content must be non-empty")

        uri = text_source_uri(chatbot_id, stable_key)
        with session_scope(self._engine) as session:
            self._require_chatbot(session, chatbot_id)
            source = session.exec(
                select(KnowledgeSource).where(
                    KnowledgeSource.chatbot_id == chatbot_id,
                    KnowledgeSource.uri == uri,
                )
            ).first()
            if source is None:
                source = KnowledgeSource(
                    chatbot_id=chatbot_id,
                    label=title,
                    type=KnowledgeSourceType.TEXT,
                    uri=uri,
                )
            source.label = title
            source.status = KnowledgeSourceStatus.PENDING
            for field_name, value in (
                ("canonical_url", canonical_url),
                ("original_url", original_url),
                ("extraction_method", extraction_method),
                ("text_quality", text_quality),
            ):
                if value is not None:
                    setattr(source, field_name, value)
            session.add(source)
            session.flush()

            payload = TextJobPayload(
                knowledge_source_id=str(source.id),
                title=title,
                content=content,
                source_key=source_key,
                canonical_url=canonical_url,
                original_url=original_url,
                extraction_method=extraction_method,
                text_quality=text_quality,
            )
            job = self._new_job(
                session,
                chatbot_id=chatbot_id,
                kind=IngestionJobKind.TEXT,
                payload=payload.model_dump(),
                knowledge_source_id=source.id,
                requested_by=requested_by,
            )
            source.last_ingestion_job_id = job.id
            session.add(source)
            enqueued = EnqueuedJob(job_id=job.id, knowledge_source_id=source.id)

        logger.info(
            "text ingestion job enqueued",
            extra={"job_id": str(enqueued.job_id), "chatbot_id": str(chatbot_id)},
        )
        return enqueued

    def enqueue_scrape_job(
        self,
        *,
        chatbot_id: UUID,
        options: ScrapeOptions,
        requested_by: str | None = None,
    ) -> EnqueuedJob:
        with session_scope(self._engine) as session:
            self._require_chatbot(session, chatbot_id)
            job = self._new_job(
                session,
                chatbot_id=chatbot_id,
                kind=IngestionJobKind.SCRAPE,
                payload=ScrapeJobPayload(options=options).model_dump(by_alias=True),
                requested_by=requested_by,
            )
            enqueued = EnqueuedJob(job_id=job.id)

        logger.info(
            "scrape ingestion job enqueued",
            extra={"job_id": str(enqueued.job_id), "start_urls": options.start_urls},
        )
        return enqueued

    def enqueue_delete_source_job(
        self,
        *,
        chatbot_id: UUID,
        knowledge_source_id: UUID,
        requested_by: str | None = None,
    ) -> EnqueuedJob:
        """Queue removal of a source; the row is deleted once its vectors are gone."""

        with session_scope(self._engine) as session:
            source = session.get(KnowledgeSource, knowledge_source_id)
            if source is None or source.chatbot_id != chatbot_id:
                raise NotFoundError(
                    "knowledge source not found",
                    details={"knowledge_source_id": str(knowledge_source_id)},
                )
            job = self._new_job(
                session,
                chatbot_id=chatbot_id,
                kind=IngestionJobKind.DELETE_SOURCE,
                payload=DeleteSourceJobPayload(
                    knowledge_source_id=str(knowledge_source_id)
                ).model_dump(),
                knowledge_source_id=knowledge_source_id,
                requested_by=requested_by,
            )
            source.status = KnowledgeSourceStatus.PENDING
            source.last_ingestion_job_id = job.id
            session.add(source)
            enqueued = EnqueuedJob(job_id=job.id, knowledge_source_id=knowledge_source_id)

        logger.info(
            "delete source job enqueued",
            extra={"job_id": str(enqueued.job_id), "knowledge_source_id": str(knowledge_source_id)},
        )
        return enqueued

    def get_job(self, job_id: UUID) -> JobSnapshot:
        with Session(self._engine) as session:
            job = session.get(IngestionJob, job_id)
            if job is None:
                raise NotFoundError("ingestion job not found", details={"job_id": str(job_id)})
            return JobSnapshot.model_validate(job)

    @staticmethod
    def _require_chatbot(session: Session, chatbot_id: UUID) -> None:
        if session.get(Chatbot, chatbot_id) is None:
            raise NotFoundError("chatbot not found", details={"chatbot_id": str(chatbot_id)})

    @staticmethod
    def _new_job(
        session: Session,
        *,
        chatbot_id: UUID,
        kind: IngestionJobKind,
        payload: dict[str, Any],
        knowledge_source_id: UUID | None = None,
        requested_by: str | None = None,
    ) -> IngestionJob:
        job = IngestionJob(
            chatbot_id=chatbot_id,
            kind=kind,
            status=IngestionJobStatus.PENDING,
            payload=payload,
            knowledge_source_id=knowledge_source_id,
            requested_by=requested_by,
        )
        session.add(job)
        session.flush()
        return job
