"""SQLModel declarative models for chatbots, knowledge manifests and the vector outbox."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def created_at_field() -> Any:
    return Field(
        default_factory=utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
        ),
    )


def updated_at_field() -> Any:
    return Field(
        default_factory=utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
        ),
    )


def timestamp_field() -> Any:
    return Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class UUIDPrimaryKey(SQLModel, table=False):
    """Mixin providing a UUID primary key."""

    id: UUID = Field(default_factory=uuid4, primary_key=True, nullable=False)


class ChatbotStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class Chatbot(UUIDPrimaryKey, table=True):
    """Tenant boundary for knowledge, conversations and the vector namespace."""

    __tablename__ = "chatbots"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    name: str = Field(sa_column=Column(String(length=200), nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    system_prompt: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    model: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    status: ChatbotStatus = Field(
        default=ChatbotStatus.DRAFT,
        sa_column=Column(
            String(length=16), nullable=False, default=ChatbotStatus.DRAFT.value
        ),
    )

    knowledge_sources: List["KnowledgeSource"] = Relationship(back_populates="chatbot")


class KnowledgeSourceType(str, Enum):
    URL = "url"
    TEXT = "text"
    FILE = "file"


class KnowledgeSourceStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class KnowledgeSource(UUIDPrimaryKey, table=True):
    """A named, addressable input: a URL, a block of pasted text or a file."""

    __tablename__ = "knowledge_sources"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    chatbot_id: UUID = Field(foreign_key="chatbots.id", nullable=False, index=True)
    label: str = Field(sa_column=Column(String(length=500), nullable=False))
    type: KnowledgeSourceType = Field(sa_column=Column(String(length=16), nullable=False))
    uri: str = Field(sa_column=Column(Text, nullable=False))
    canonical_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    original_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    extraction_method: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    text_quality: str | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    status: KnowledgeSourceStatus = Field(
        default=KnowledgeSourceStatus.PENDING,
        sa_column=Column(
            String(length=16),
            nullable=False,
            default=KnowledgeSourceStatus.PENDING.value,
        ),
    )
    current_revision: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    last_ingestion_job_id: UUID | None = Field(default=None, nullable=True, index=True)
    last_ingested_at: datetime | None = timestamp_field()

    chatbot: Chatbot | None = Relationship(back_populates="knowledge_sources")

    __table_args__ = (
        UniqueConstraint("chatbot_id", "uri", name="uq_knowledge_source_chatbot_uri"),
    )


class IngestionJobKind(str, Enum):
    TEXT = "text"
    SCRAPE = "scrape"
    DELETE_SOURCE = "delete_source"


class IngestionJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    PARTIAL_FAILED = "partial_failed"
    SUCCEEDED = "succeeded"


class IngestionJob(UUIDPrimaryKey, table=True):
    """Unit of asynchronous ingestion work; terminal status is derived from its outbox."""

    __tablename__ = "ingestion_jobs"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    chatbot_id: UUID = Field(foreign_key="chatbots.id", nullable=False, index=True)
    kind: IngestionJobKind = Field(sa_column=Column(String(length=16), nullable=False))
    status: IngestionJobStatus = Field(
        default=IngestionJobStatus.PENDING,
        sa_column=Column(
            String(length=16),
            nullable=False,
            default=IngestionJobStatus.PENDING.value,
            index=True,
        ),
    )
    knowledge_source_id: UUID | None = Field(default=None, nullable=True, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    requested_by: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )
    total_chunks: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    succeeded_vectors: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, default=0)
    )
    failed_vectors: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime | None = timestamp_field()
    # set once every source of the job has been staged
    staged_at: datetime | None = timestamp_field()
    finished_at: datetime | None = timestamp_field()


class ChunkSourceType(str, Enum):
    WEB = "web"
    PDF = "pdf"
    TEXT = "text"


class KnowledgeChunk(SQLModel, table=True):
    """Manifest row for one citable chunk; ``chunk_id`` doubles as the vector id."""

    __tablename__ = "knowledge_chunks"

    chunk_id: str = Field(
        sa_column=Column(String(length=64), primary_key=True, nullable=False)
    )
    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    chatbot_id: UUID = Field(foreign_key="chatbots.id", nullable=False, index=True)
    knowledge_source_id: UUID = Field(
        foreign_key="knowledge_sources.id", nullable=False, index=True
    )
    source_type: ChunkSourceType = Field(sa_column=Column(String(length=8), nullable=False))
    uri: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    canonical_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    original_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    extraction_method: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    text_quality: str | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    title: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    source_revision: str = Field(sa_column=Column(String(length=64), nullable=False))
    page_no: int | None = Field(default=None, nullable=True)
    start_offset: int = Field(nullable=False)
    end_offset: int = Field(nullable=False)
    text: str = Field(sa_column=Column(Text, nullable=False))
    text_hash: str = Field(sa_column=Column(String(length=64), nullable=False))
    embedding_model: str = Field(sa_column=Column(String(length=128), nullable=False))
    embedding_dimensions: int = Field(nullable=False)
    token_count: int = Field(default=0, nullable=False)
    created_by_job_id: UUID | None = Field(default=None, nullable=True)
    updated_by_job_id: UUID | None = Field(default=None, nullable=True)
    deleted_at: datetime | None = timestamp_field()

    __table_args__ = (
        Index("ix_knowledge_chunks_source_active", "knowledge_source_id", "deleted_at"),
    )


class VectorOperation(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


class VectorOutbox(UUIDPrimaryKey, table=True):
    """Durable queue of vector index operations owned by an ingestion job."""

    __tablename__ = "vector_outbox"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    job_id: UUID = Field(foreign_key="ingestion_jobs.id", nullable=False, index=True)
    chatbot_id: UUID = Field(nullable=False, index=True)
    operation: VectorOperation = Field(sa_column=Column(String(length=8), nullable=False))
    chunk_id: str = Field(sa_column=Column(String(length=64), nullable=False))
    status: OutboxStatus = Field(
        default=OutboxStatus.PENDING,
        sa_column=Column(
            String(length=16),
            nullable=False,
            default=OutboxStatus.PENDING.value,
            index=True,
        ),
    )
    attempt_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    next_attempt_at: datetime | None = timestamp_field()
    claimed_at: datetime | None = timestamp_field()
    processed_at: datetime | None = timestamp_field()

    __table_args__ = (
        UniqueConstraint(
            "job_id", "operation", "chunk_id", name="uq_vector_outbox_job_op_chunk"
        ),
    )


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ChatSession(UUIDPrimaryKey, table=True):
    """Conversation thread between an end user and a chatbot."""

    __tablename__ = "chat_sessions"

    created_at: datetime = created_at_field()
    updated_at: datetime = updated_at_field()

    chatbot_id: UUID = Field(foreign_key="chatbots.id", nullable=False, index=True)
    user_id: str | None = Field(
        default=None, sa_column=Column(String(length=120), nullable=True)
    )

    messages: List["ChatMessage"] = Relationship(
        back_populates="session",
        sa_relationship_kwargs={"cascade": "all,delete", "order_by": "ChatMessage.created_at"},
    )


class ChatMessage(UUIDPrimaryKey, table=True):
    """A single user or assistant turn; assistant turns keep the structured response."""

    __tablename__ = "chat_messages"

    created_at: datetime = created_at_field()

    session_id: UUID = Field(foreign_key="chat_sessions.id", nullable=False, index=True)
    role: MessageRole = Field(sa_column=Column(String(length=16), nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    response_json: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )

    session: Optional[ChatSession] = Relationship(back_populates="messages")


metadata = SQLModel.metadata
