"""Embedding providers producing vectors of the canonical index dimension."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from openai import AsyncOpenAI

from ragbot.core.config import AppSettings, EmbeddingsProviderName
from ragbot.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

# The vector index only accepts a discrete set of sizes; every vector is stored at this one.
EMBEDDING_DIMENSIONS = 1024
DETERMINISTIC_MODEL = "deterministic_test_v1"


class EmbeddingsProvider(Protocol):
    model: str
    dimensions: int

    async def embed(self, text: str) -> list[float]:
        ...


def normalize_dimensions(vector: Sequence[float], dimensions: int = EMBEDDING_DIMENSIONS) -> list[float]:
    """Zero-pad or truncate ``vector`` to ``dimensions`` entries."""

    values = [float(value) for value in vector[:dimensions]]
    if len(values) < dimensions:
        values.extend([0.0] * (dimensions - len(values)))
    return values


class OpenAIEmbeddingsProvider:
    """Embeddings from an OpenAI-compatible endpoint, requested at the canonical dimension."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-3-large",
        base_url: str | None = None,
        timeout: float = 30.0,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.dimensions = EMBEDDING_DIMENSIONS
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def embed(self, text: str) -> list[float]:
        response = await self._client.embeddings.create(
            model=self.model,
            input=text,
            dimensions=self.dimensions,
        )
        return normalize_dimensions(response.data[0].embedding, self.dimensions)


class DeterministicEmbeddingsProvider:
    """Hash-derived pseudo embeddings for tests; identical text gives identical vectors."""

    model = DETERMINISTIC_MODEL
    dimensions = EMBEDDING_DIMENSIONS

    async def embed(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return normalize_dimensions([(byte / 255) * 2 - 1 for byte in digest], self.dimensions)


def create_embeddings_provider(settings: AppSettings) -> EmbeddingsProvider:
    """Build the configured provider, failing loudly on disallowed combinations."""

    provider = settings.embeddings.provider
    if provider is EmbeddingsProviderName.DETERMINISTIC_TEST:
        if settings.is_production:
            raise ConfigurationError(
                "deterministic_test embeddings provider is not allowed in production"
            )
        logger.warning("using deterministic test embeddings", extra={"model": DETERMINISTIC_MODEL})
        return DeterministicEmbeddingsProvider()

    if not settings.openai.api_key:
        raise ConfigurationError("OPENAI_API_KEY is required for the openai embeddings provider")
    return OpenAIEmbeddingsProvider(
        api_key=settings.openai.api_key,
        model=settings.openai.embedding_model,
        base_url=settings.openai.base_url,
        timeout=settings.openai.timeout_seconds,
    )
