"""Retrieval building blocks: canonical text, chunking, identity, embeddings and index."""

from . import canonicalize, chunk_id, chunking, embeddings, llm, vector_store
from .canonicalize import canonicalize as canonicalize_text
from .chunk_id import (
    PageText,
    compute_chunk_id,
    compute_pdf_source_revision,
    compute_source_revision,
)
from .chunking import AnchoredChunk, ChunkingConfig, chunk_text
from .embeddings import (
    EMBEDDING_DIMENSIONS,
    DeterministicEmbeddingsProvider,
    EmbeddingsProvider,
    OpenAIEmbeddingsProvider,
    create_embeddings_provider,
)
from .vector_store import (
    CitationMetadata,
    InMemoryVectorStore,
    QdrantVectorStore,
    VectorMatch,
    VectorRecord,
    VectorStore,
    create_vector_store,
)

__all__ = [
    "canonicalize",
    "chunk_id",
    "chunking",
    "embeddings",
    "llm",
    "vector_store",
    "canonicalize_text",
    "PageText",
    "compute_chunk_id",
    "compute_pdf_source_revision",
    "compute_source_revision",
    "AnchoredChunk",
    "ChunkingConfig",
    "chunk_text",
    "EMBEDDING_DIMENSIONS",
    "DeterministicEmbeddingsProvider",
    "EmbeddingsProvider",
    "OpenAIEmbeddingsProvider",
    "create_embeddings_provider",
    "CitationMetadata",
    "InMemoryVectorStore",
    "QdrantVectorStore",
    "VectorMatch",
    "VectorRecord",
    "VectorStore",
    "create_vector_store",
]
