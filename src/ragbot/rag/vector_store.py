"""Vector index backends keyed by chunk id and namespaced per chatbot."""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from typing import Any, Protocol

import httpx

from ragbot.core.config import AppSettings, VectorStoreBackend
from ragbot.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_SOURCE_TYPES = {"web", "pdf", "text"}
# Qdrant point ids must be UUIDs or integers; chunk ids are mapped deterministically.
_POINT_NAMESPACE = uuid.UUID("8c4f7f0e-2d4b-4f53-9a43-5f0f2b3c1e77")


class InvalidCitationError(ValueError):
    """Citation metadata is missing an anchor required for its source type."""


@dataclass(slots=True, frozen=True)
class CitationMetadata:
    """Citation payload persisted next to every vector.

    The same fields live on the ``knowledge_chunks`` manifest row; validation
    runs on construction so nothing un-anchored reaches the index.
    """

    chatbot_id: str
    chunk_id: str
    source_id: str
    source_type: str
    source_revision: str
    start_offset: int
    end_offset: int
    embedding_model: str
    embedding_dimensions: int
    uri: str | None = None
    canonical_url: str | None = None
    original_url: str | None = None
    extraction_method: str | None = None
    text_quality: str | None = None
    title: str | None = None
    page_no: int | None = None

    def __post_init__(self) -> None:
        if self.source_type not in _SOURCE_TYPES:
            raise InvalidCitationError(f"unknown source_type {self.source_type!r}")
        if not _is_int(self.start_offset) or not _is_int(self.end_offset):
            raise InvalidCitationError("offsets must be integers")
        if self.start_offset < 0 or self.end_offset <= self.start_offset:
            raise InvalidCitationError(
                f"invalid offsets {self.start_offset}..{self.end_offset} for chunk {self.chunk_id}"
            )
        if self.source_type == "web" and not self.uri:
            raise InvalidCitationError(f"web chunk {self.chunk_id} has no uri")
        if self.source_type == "pdf" and not _is_int(self.page_no):
            raise InvalidCitationError(f"pdf chunk {self.chunk_id} has no page number")

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["chatbotId"] = payload.pop("chatbot_id")
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> CitationMetadata:
        data = {key: payload.get(key) for key in cls.__dataclass_fields__ if key != "chatbot_id"}
        return cls(chatbot_id=str(payload.get("chatbotId")), **data)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(slots=True, frozen=True)
class VectorRecord:
    vector_id: str
    vector: Sequence[float]
    metadata: CitationMetadata


@dataclass(slots=True, frozen=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any]


class VectorStore(Protocol):
    """Common interface for vector storage backends. Namespace == chatbot id."""

    async def upsert(self, record: VectorRecord) -> None:
        ...

    async def similarity_search(
        self, namespace: str, vector: Sequence[float], top_k: int
    ) -> list[VectorMatch]:
        ...

    async def delete_by_ids(self, namespace: str, ids: Sequence[str]) -> None:
        ...

    async def delete_by_namespace(self, namespace: str) -> None:
        ...


def _cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=False))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorStore:
    """Linear-scan cosine index for local development. Nothing is persisted."""

    def __init__(self) -> None:
        self._namespaces: dict[str, dict[str, tuple[list[float], dict[str, Any]]]] = {}

    async def upsert(self, record: VectorRecord) -> None:
        namespace = self._namespaces.setdefault(record.metadata.chatbot_id, {})
        namespace[record.vector_id] = (list(record.vector), record.metadata.to_payload())

    async def similarity_search(
        self, namespace: str, vector: Sequence[float], top_k: int
    ) -> list[VectorMatch]:
        entries = self._namespaces.get(namespace, {})
        scored = [
            VectorMatch(id=vector_id, score=_cosine_similarity(vector, stored), metadata=dict(payload))
            for vector_id, (stored, payload) in entries.items()
            if payload.get("chatbotId") == namespace
        ]
        scored.sort(key=lambda match: match.score, reverse=True)
        return scored[:top_k]

    async def delete_by_ids(self, namespace: str, ids: Sequence[str]) -> None:
        entries = self._namespaces.get(namespace)
        if not entries:
            return
        for vector_id in ids:
            entries.pop(vector_id, None)

    async def delete_by_namespace(self, namespace: str) -> None:
        self._namespaces.pop(namespace, None)

    def count(self, namespace: str) -> int:
        return len(self._namespaces.get(namespace, {}))


class QdrantVectorStore:
    """Qdrant REST integration with one collection per chatbot namespace."""

    def __init__(
        self,
        *,
        url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        collection_prefix: str = "ragbot",
        dimensions: int = 1024,
        delete_batch_size: int = 1000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["api-key"] = api_key
        self._client = client or httpx.AsyncClient(
            base_url=url.rstrip("/"), headers=headers, timeout=timeout
        )
        self._prefix = collection_prefix
        self._dimensions = dimensions
        self._delete_batch_size = delete_batch_size
        self._known_collections: set[str] = set()

    def collection_name(self, namespace: str) -> str:
        return f"{self._prefix}_{namespace}"

    @staticmethod
    def point_id(vector_id: str) -> str:
        return str(uuid.uuid5(_POINT_NAMESPACE, vector_id))

    async def _ensure_collection(self, collection: str) -> None:
        if collection in self._known_collections:
            return
        response = await self._client.put(
            f"/collections/{collection}",
            json={"vectors": {"size": self._dimensions, "distance": "Cosine"}},
        )
        # 409: created concurrently or already present
        if response.status_code not in (200, 201, 409):
            response.raise_for_status()
        self._known_collections.add(collection)

    async def upsert(self, record: VectorRecord) -> None:
        collection = self.collection_name(record.metadata.chatbot_id)
        await self._ensure_collection(collection)
        point = {
            "id": self.point_id(record.vector_id),
            "vector": list(record.vector),
            "payload": record.metadata.to_payload(),
        }
        response = await self._client.put(
            f"/collections/{collection}/points",
            params={"wait": "true"},
            json={"points": [point]},
        )
        response.raise_for_status()

    async def similarity_search(
        self, namespace: str, vector: Sequence[float], top_k: int
    ) -> list[VectorMatch]:
        collection = self.collection_name(namespace)
        response = await self._client.post(
            f"/collections/{collection}/points/search",
            json={
                "vector": list(vector),
                "limit": top_k,
                "with_payload": True,
                "filter": {"must": [{"key": "chatbotId", "match": {"value": namespace}}]},
            },
        )
        if response.status_code == 404:
            return []
        response.raise_for_status()
        matches: list[VectorMatch] = []
        for item in response.json().get("result", []):
            payload = item.get("payload") or {}
            matches.append(
                VectorMatch(
                    id=str(payload.get("chunk_id") or item.get("id")),
                    score=float(item.get("score", 0.0)),
                    metadata=payload,
                )
            )
        return matches

    async def delete_by_ids(self, namespace: str, ids: Sequence[str]) -> None:
        collection = self.collection_name(namespace)
        for offset in range(0, len(ids), self._delete_batch_size):
            batch = ids[offset : offset + self._delete_batch_size]
            response = await self._client.post(
                f"/collections/{collection}/points/delete",
                params={"wait": "true"},
                json={"points": [self.point_id(vector_id) for vector_id in batch]},
            )
            if response.status_code == 404:
                return
            response.raise_for_status()

    async def delete_by_namespace(self, namespace: str) -> None:
        collection = self.collection_name(namespace)
        response = await self._client.delete(f"/collections/{collection}")
        if response.status_code != 404:
            response.raise_for_status()
        self._known_collections.discard(collection)

    async def close(self) -> None:
        await self._client.aclose()


def create_vector_store(settings: AppSettings) -> VectorStore:
    """Build the configured backend; the in-memory index is refused in production."""

    backend = settings.vector_store.backend
    if backend is VectorStoreBackend.MEMORY:
        if settings.is_production:
            raise ConfigurationError("memory vector store backend is not allowed in production")
        logger.warning("using in-memory vector store; vectors are not persisted")
        return InMemoryVectorStore()

    return QdrantVectorStore(
        url=settings.qdrant.url,
        api_key=settings.qdrant.api_key,
        timeout=settings.qdrant.timeout_seconds,
        collection_prefix=settings.qdrant.collection_prefix,
        delete_batch_size=settings.qdrant.delete_batch_size,
    )
