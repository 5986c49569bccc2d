"""Database models and helpers for the ingestion and chat services."""

from . import models, session
from .models import (
    Chatbot,
    ChatMessage,
    ChatSession,
    IngestionJob,
    KnowledgeChunk,
    KnowledgeSource,
    VectorOutbox,
    metadata,
)
from .session import create_engine_from_settings, init_db, insert_ignore, session_scope

__all__ = [
    "models",
    "session",
    "Chatbot",
    "ChatMessage",
    "ChatSession",
    "IngestionJob",
    "KnowledgeChunk",
    "KnowledgeSource",
    "VectorOutbox",
    "metadata",
    "create_engine_from_settings",
    "init_db",
    "insert_ignore",
    "session_scope",
]
