"""Dependency wiring for the ragbot FastAPI application."""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy.engine import Engine

from ragbot.chat.service import ChatService
from ragbot.core.config import AppSettings
from ragbot.core.db.session import create_engine_from_settings, init_db
from ragbot.ingestion.events import ProvisioningEventPublisher, create_event_publisher
from ragbot.ingestion.queue import IngestionQueue
from ragbot.ingestion.worker import IngestionWorker, build_worker
from ragbot.rag.embeddings import EmbeddingsProvider, create_embeddings_provider
from ragbot.rag.llm import LLMClient, create_llm_client
from ragbot.rag.vector_store import VectorStore, create_vector_store

logger = logging.getLogger(__name__)


@lru_cache
def get_settings() -> AppSettings:
    """Return cached ``AppSettings`` instance."""

    return AppSettings.load()


@lru_cache
def get_engine() -> Engine:
    """Create (or reuse) the SQLModel engine."""

    engine = create_engine_from_settings(get_settings())
    init_db(engine)
    return engine


@lru_cache
def get_embeddings_provider() -> EmbeddingsProvider:
    return create_embeddings_provider(get_settings())


@lru_cache
def get_vector_store() -> VectorStore:
    # shared by the chat service and the worker so the in-memory backend sees one index
    return create_vector_store(get_settings())


@lru_cache
def get_llm_client() -> LLMClient:
    return create_llm_client(get_settings())


@lru_cache
def get_event_publisher() -> ProvisioningEventPublisher:
    settings = get_settings()
    return create_event_publisher(settings.redis.url, settings.redis.channel_template)


def get_ingestion_queue() -> IngestionQueue:
    return IngestionQueue(get_engine())


def get_chat_service() -> ChatService:
    settings = get_settings()
    return ChatService(
        engine=get_engine(),
        embeddings=get_embeddings_provider(),
        vector_store=get_vector_store(),
        llm=get_llm_client(),
        settings=settings.retrieval,
        rerank_model=settings.openai.rerank_model,
    )


@lru_cache
def get_ingestion_worker() -> IngestionWorker:
    return build_worker(
        get_settings(),
        engine=get_engine(),
        embeddings=get_embeddings_provider(),
        vector_store=get_vector_store(),
        publisher=get_event_publisher(),
    )
