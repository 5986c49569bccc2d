from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from ragbot.core.config import AppSettings, EmbeddingsProviderName, EmbeddingsSettings, Environment
from ragbot.core.errors import ConfigurationError
from ragbot.rag.embeddings import (
    EMBEDDING_DIMENSIONS,
    DeterministicEmbeddingsProvider,
    OpenAIEmbeddingsProvider,
    create_embeddings_provider,
    normalize_dimensions,
)

pytestmark = pytest.mark.unit


class StubEmbeddingsAPI:
    def __init__(self, vector: list[float]) -> None:
        self.vector = vector
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        return SimpleNamespace(data=[SimpleNamespace(embedding=self.vector)])


def _settings(provider: EmbeddingsProviderName, **overrides: Any) -> AppSettings:
    return AppSettings(embeddings=EmbeddingsSettings(provider=provider), **overrides)


@pytest.mark.asyncio
async def test_deterministic_provider_is_stable_and_sized() -> None:
    provider = DeterministicEmbeddingsProvider()

    first = await provider.embed("refund policy")
    second = await provider.embed("refund policy")
    other = await provider.embed("shipping times")

    assert first == second
    assert first != other
    assert len(first) == EMBEDDING_DIMENSIONS


@pytest.mark.asyncio
async def test_openai_provider_requests_canonical_dimension() -> None:
    api = StubEmbeddingsAPI([0.5, 0.25])
    client = SimpleNamespace(embeddings=api)
    provider = OpenAIEmbeddingsProvider(api_key="sk-test", model="embed-model", client=client)

    vector = await provider.embed("hello")

    assert api.calls == [{"model": "embed-model", "input": "hello", "dimensions": EMBEDDING_DIMENSIONS}]
    assert len(vector) == EMBEDDING_DIMENSIONS
    assert vector[:3] == [0.5, 0.25, 0.0]


def test_normalize_dimensions_truncates_long_vectors() -> None:
    assert normalize_dimensions([1.0, 2.0, 3.0], 2) == [1.0, 2.0]


def test_factory_rejects_deterministic_provider_in_production() -> None:
    settings = _settings(
        EmbeddingsProviderName.DETERMINISTIC_TEST, environment=Environment.PRODUCTION
    )

    with pytest.raises(ConfigurationError):
        create_embeddings_provider(settings)


def test_factory_requires_openai_key(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    settings = _settings(EmbeddingsProviderName.OPENAI)

    with pytest.raises(ConfigurationError):
        create_embeddings_provider(settings)


def test_factory_builds_deterministic_provider_outside_production() -> None:
    provider = create_embeddings_provider(_settings(EmbeddingsProviderName.DETERMINISTIC_TEST))

    assert isinstance(provider, DeterministicEmbeddingsProvider)
