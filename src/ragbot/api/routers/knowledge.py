"""Knowledge ingestion endpoints: enqueue jobs and poll their status."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status

from ragbot.ingestion.models import ScrapeOptions
from ragbot.ingestion.queue import IngestionQueue, JobSnapshot

from ..dependencies import get_ingestion_queue
from ..schemas import EnqueueResponse, TextKnowledgeRequest

router = APIRouter(prefix="/v1", tags=["knowledge"])

QueueDep = Annotated[IngestionQueue, Depends(get_ingestion_queue)]


@router.post(
    "/chatbots/{chatbot_id}/knowledge/text",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_text(
    chatbot_id: UUID, payload: TextKnowledgeRequest, queue: QueueDep
) -> EnqueueResponse:
    """Queue pasted text; re-sending the same title or source key updates that source."""

    enqueued = queue.enqueue_text_job(
        chatbot_id=chatbot_id,
        title=payload.title,
        content=payload.content,
        source_key=payload.source_key,
        requested_by=payload.requested_by,
        canonical_url=payload.canonical_url,
        original_url=payload.original_url,
        extraction_method=payload.extraction_method,
        text_quality=payload.text_quality,
    )
    return EnqueueResponse(job_id=enqueued.job_id, knowledge_source_id=enqueued.knowledge_source_id)


@router.post(
    "/chatbots/{chatbot_id}/knowledge/scrape",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_scrape(
    chatbot_id: UUID, options: ScrapeOptions, queue: QueueDep
) -> EnqueueResponse:
    enqueued = queue.enqueue_scrape_job(chatbot_id=chatbot_id, options=options)
    return EnqueueResponse(job_id=enqueued.job_id)


@router.delete(
    "/chatbots/{chatbot_id}/knowledge/{knowledge_source_id}",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_delete_source(
    chatbot_id: UUID, knowledge_source_id: UUID, queue: QueueDep
) -> EnqueueResponse:
    enqueued = queue.enqueue_delete_source_job(
        chatbot_id=chatbot_id, knowledge_source_id=knowledge_source_id
    )
    return EnqueueResponse(job_id=enqueued.job_id, knowledge_source_id=enqueued.knowledge_source_id)


@router.get("/ingestion-jobs/{job_id}", response_model=JobSnapshot)
async def get_ingestion_job(job_id: UUID, queue: QueueDep) -> JobSnapshot:
    return queue.get_job(job_id)
