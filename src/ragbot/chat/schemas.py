"""Request and response models for the citation-gated chat endpoint."""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class Claim(BaseModel):
    """One statement of an answer together with the chunks that support it."""

    model_config = ConfigDict(extra="ignore")

    text: str = Field(..., min_length=1)
    supporting_chunk_ids: list[str] = Field(default_factory=list)


class StructuredAnswer(BaseModel):
    """Strict JSON shape the answering model must return."""

    model_config = ConfigDict(extra="ignore")

    claims: list[Claim] = Field(default_factory=list)
    unknown: bool
    reason: str | None = None


class SourceCitation(BaseModel):
    chunk_id: str
    title: str | None = None
    canonical_url: str | None = None
    original_url: str | None = None
    uri: str | None = None
    source_type: str
    page_no: int | None = None
    start_offset: int
    end_offset: int


class RagResponse(BaseModel):
    """Answer returned to chat callers; refusals use the same shape with ``unknown=True``."""

    claims: list[Claim] = Field(default_factory=list)
    unknown: bool
    reason: str | None = None
    debug_id: str
    context_truncated: bool = False
    sources: list[SourceCitation] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)
    session_id: UUID | None = None
    user_id: str | None = Field(default=None, max_length=120)


class ChatResponse(RagResponse):
    session_id: UUID
