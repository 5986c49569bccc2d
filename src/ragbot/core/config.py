"""Configuration loaders for the ingestion worker and chat service.

Leverages pydantic-settings to hydrate runtime configuration from environment
variables, an optional ``.env`` file, or default values. Nested settings classes
mirror infrastructure concerns (datastore, vector index, LLM provider) and the
operational knobs of the ingestion and retrieval pipelines.
"""

from __future__ import annotations

from enum import Enum
from functools import cached_property
from typing import Any

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseAppSettings(BaseSettings):
    """Base settings that looks at environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


def _prefixed(prefix: str) -> SettingsConfigDict:
    return SettingsConfigDict(
        env_prefix=prefix,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class Environment(str, Enum):
    """Deployment environment the process runs in."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class PostgresSettings(BaseAppSettings):
    """Postgres connection details."""

    model_config = _prefixed("postgres_")

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(
        default="ragbot",
        validation_alias=AliasChoices("postgres_database", "postgres_db"),
    )
    user: str = "ragbot"
    password: str = "changeme"
    sslmode: str = "prefer"
    url: str | None = None

    @cached_property
    def dsn(self) -> str:
        """Return a SQLAlchemy compatible DSN string; ``url`` wins when set."""

        if self.url:
            return self.url
        return (
            f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"
            f"?sslmode={self.sslmode}"
        )


class RedisSettings(BaseAppSettings):
    """Redis URL used for provisioning event pub/sub."""

    model_config = _prefixed("redis_")

    url: str | None = None
    channel_template: str = "provisioning:{chatbot_id}"


class QdrantSettings(BaseAppSettings):
    """Qdrant vector index configuration."""

    model_config = _prefixed("qdrant_")

    url: str = "http://localhost:6333"
    api_key: str | None = None
    timeout_seconds: float = Field(default=10.0, ge=0.1)
    collection_prefix: str = "ragbot"
    delete_batch_size: int = Field(default=1000, ge=1)


class OpenAISettings(BaseAppSettings):
    """Configuration specific to OpenAI-compatible models."""

    model_config = _prefixed("openai_")

    api_key: str | None = None
    base_url: str | None = None
    model: str = Field(default="gpt-4.1-mini")
    rerank_model: str = Field(default="gpt-4.1-mini")
    embedding_model: str = Field(default="text-embedding-3-large")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    timeout_seconds: float = Field(default=30.0, ge=0.1)


class VectorStoreBackend(str, Enum):
    MEMORY = "memory"
    QDRANT = "qdrant"


class VectorStoreSettings(BaseAppSettings):
    model_config = _prefixed("vector_store_")

    backend: VectorStoreBackend = VectorStoreBackend.MEMORY


class EmbeddingsProviderName(str, Enum):
    OPENAI = "openai"
    DETERMINISTIC_TEST = "deterministic_test"


class EmbeddingsSettings(BaseAppSettings):
    model_config = _prefixed("embeddings_")

    provider: EmbeddingsProviderName = EmbeddingsProviderName.OPENAI


class IngestionSettings(BaseAppSettings):
    """Chunking parameters and outbox worker tuning."""

    model_config = _prefixed("ingestion_")

    worker_enabled: bool = True
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    chunk_size: int = Field(default=1200, ge=100)
    chunk_overlap: int = Field(default=200, ge=0)
    max_vector_attempts: int = Field(default=5, ge=1)
    outbox_running_ttl_seconds: int = Field(default=300, ge=1)
    outbox_batch_size: int = Field(default=10, ge=1)
    finalize_batch_size: int = Field(default=20, ge=1)

    @model_validator(mode="after")
    def _check_overlap(self) -> IngestionSettings:
        if self.chunk_overlap >= self.chunk_size:
            msg = "chunk_overlap must be smaller than chunk_size"
            raise ValueError(msg)
        return self


class RetrievalSettings(BaseAppSettings):
    """Knobs for the retrieval and answer gate."""

    model_config = _prefixed("retrieval_")

    query_rewrite_enabled: bool = True
    continuity_enabled: bool = True
    continuity_turns: int = Field(default=4, ge=0)
    initial_top_k: int = Field(default=20, ge=1)
    max_top_k: int = Field(default=1000, ge=1)
    rerank_keep: int = Field(default=5, ge=1)
    min_relevance_score: float = Field(default=0.2, ge=0.0, le=1.0)
    min_hydrated_chunks: int = Field(default=2, ge=1)
    min_supported_claims: int = Field(default=1, ge=1)
    max_context_chars: int = Field(default=12000, ge=200)


class ScraperSettings(BaseAppSettings):
    """Remote scraper service returning dataset items."""

    model_config = _prefixed("scraper_")

    url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = Field(default=300.0, ge=1.0)


class TelemetrySettings(BaseAppSettings):
    """Shared telemetry configuration."""

    model_config = _prefixed("otel_")

    exporter_endpoint: str | None = None
    exporter_headers: str | None = None
    traces_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    metrics_host: str = "0.0.0.0"
    metrics_port: int | None = None


class AppSettings(BaseAppSettings):
    """Top level settings object used by services."""

    model_config = _prefixed("app_")

    environment: Environment = Environment.DEVELOPMENT

    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    qdrant: QdrantSettings = Field(default_factory=QdrantSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    embeddings: EmbeddingsSettings = Field(default_factory=EmbeddingsSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    scraper: ScraperSettings = Field(default_factory=ScraperSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)

    @property
    def is_production(self) -> bool:
        return self.environment is Environment.PRODUCTION

    @classmethod
    def load(cls, **kwargs: Any) -> AppSettings:
        """Helper factory that mirrors BaseSettings semantics."""

        return cls(**kwargs)
