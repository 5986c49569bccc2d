"""HTTP request and response bodies for the knowledge and job endpoints."""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"


class TextKnowledgeRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    content: str = Field(..., min_length=1)
    source_key: str | None = Field(default=None, max_length=500)
    canonical_url: str | None = None
    original_url: str | None = None
    extraction_method: str | None = Field(default=None, max_length=64)
    text_quality: str | None = Field(default=None, max_length=32)
    requested_by: str | None = Field(default=None, max_length=120)


class EnqueueResponse(BaseModel):
    job_id: UUID
    knowledge_source_id: UUID | None = None
