"""Retrieval and answer gate: cited answers or an explicit refusal, never a guess."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from uuid import UUID

import pydantic
from prometheus_client import Counter, Histogram
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ragbot.core.config import RetrievalSettings
from ragbot.core.db.models import (
    Chatbot,
    ChatMessage,
    ChatSession,
    KnowledgeChunk,
    MessageRole,
)
from ragbot.core.db.session import session_scope
from ragbot.core.errors import AnswerGenerationError, NotFoundError, ValidationError
from ragbot.rag.embeddings import EmbeddingsProvider
from ragbot.rag.llm import ChatTurn, LLMClient
from ragbot.rag.vector_store import VectorMatch, VectorStore
from ragbot.utils.tracing import generate_debug_id

from . import prompts
from .schemas import ChatResponse, Claim, RagResponse, SourceCitation, StructuredAnswer

logger = logging.getLogger(__name__)

CHAT_REFUSALS = Counter(
    "ragbot_chat_refusals_total",
    "Chat responses converted to a refusal, by gate.",
    ["gate"],
)
CHAT_ANSWERS = Counter(
    "ragbot_chat_answers_total",
    "Chat responses returned with verified claims.",
)
RETRIEVAL_CANDIDATES = Histogram(
    "ragbot_chat_hydrated_candidates",
    "Hydrated candidates per question before reranking.",
    buckets=(0, 1, 2, 5, 10, 20, 50, 100),
)

NO_CONTEXT_REASON = (
    "I could not find relevant information in the knowledge base to answer this question."
)
INSUFFICIENT_CONTEXT_REASON = (
    "There is not enough supporting information in the knowledge base to answer this question."
)
UNVERIFIED_ANSWER_REASON = (
    "I could not produce an answer that is fully supported by the knowledge base."
)

MIN_REWRITE_CHARS = 3
_RANK_SPLIT = re.compile(r"[,\s]+")


@dataclass(slots=True, frozen=True)
class Candidate:
    """A vector match hydrated against its live manifest row."""

    chunk_id: str
    score: float
    text: str
    source_type: str
    start_offset: int
    end_offset: int
    title: str | None = None
    uri: str | None = None
    canonical_url: str | None = None
    original_url: str | None = None
    page_no: int | None = None

    def to_source(self) -> SourceCitation:
        return SourceCitation(
            chunk_id=self.chunk_id,
            title=self.title,
            canonical_url=self.canonical_url,
            original_url=self.original_url,
            uri=self.uri,
            source_type=self.source_type,
            page_no=self.page_no,
            start_offset=self.start_offset,
            end_offset=self.end_offset,
        )


@dataclass(slots=True, frozen=True)
class AssembledContext:
    text: str
    allowed_chunk_ids: list[str]
    truncated: bool


def _value(value: object) -> str:
    return str(getattr(value, "value", value))


def top_k_schedule(initial: int, maximum: int) -> list[int]:
    """Doubling top-K values from ``initial`` up to and including ``maximum``."""

    schedule = [min(initial, maximum)]
    while schedule[-1] < maximum:
        schedule.append(min(schedule[-1] * 2, maximum))
    return schedule


def clamp_score(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


def is_citable(chunk: KnowledgeChunk) -> bool:
    if chunk.start_offset is None or chunk.end_offset is None:
        return False
    if chunk.start_offset < 0 or chunk.end_offset <= chunk.start_offset:
        return False
    if not chunk.uri and chunk.source_type != "text":
        return False
    if chunk.source_type == "pdf" and chunk.page_no is None:
        return False
    return True


def parse_rank_list(text: str, size: int) -> list[int]:
    """1-based positions from a model's comma separated ranking, in order, deduplicated."""

    seen: list[int] = []
    for token in _RANK_SPLIT.split(text.strip()):
        if not token.isdigit():
            continue
        position = int(token)
        if 1 <= position <= size and position not in seen:
            seen.append(position)
    return seen


def assemble_context(candidates: Sequence[Candidate], max_chars: int) -> AssembledContext:
    blocks: list[str] = []
    allowed: list[str] = []
    used = 0
    truncated = False
    for candidate in candidates:
        lines = [f"[chunk_id: {candidate.chunk_id}]"]
        if candidate.title:
            lines.append(f"Title: {candidate.title}")
        url = candidate.canonical_url or candidate.original_url or candidate.uri
        if url:
            lines.append(f"URL: {url}")
        if candidate.page_no is not None:
            lines.append(f"Page: {candidate.page_no}")
        lines.append(f"Offsets: {candidate.start_offset}-{candidate.end_offset}")
        lines.append(candidate.text)
        block = "\n".join(lines)
        separator = 2 if blocks else 0
        if used + separator + len(block) > max_chars:
            truncated = True
            break
        blocks.append(block)
        allowed.append(candidate.chunk_id)
        used += separator + len(block)
    return AssembledContext(text="\n\n".join(blocks), allowed_chunk_ids=allowed, truncated=truncated)


class ChatService:
    """Answers questions for one chatbot from its own knowledge only."""

    def __init__(
        self,
        *,
        engine: Engine,
        embeddings: EmbeddingsProvider,
        vector_store: VectorStore,
        llm: LLMClient,
        settings: RetrievalSettings,
        rerank_model: str | None = None,
    ) -> None:
        self._engine = engine
        self._embeddings = embeddings
        self._vector_store = vector_store
        self._llm = llm
        self._settings = settings
        self._rerank_model = rerank_model

    async def chat(
        self,
        *,
        chatbot_id: UUID,
        message: str,
        session_id: UUID | None = None,
        user_id: str | None = None,
    ) -> ChatResponse:
        """Run the gate for ``message`` and record both turns in the conversation."""

        question = message.strip()
        if not question:
            raise ValidationError("message must be non-empty")

        session_id, history, system_prompt = self._begin_turn(
            chatbot_id=chatbot_id, question=question, session_id=session_id, user_id=user_id
        )
        response = await self.respond(
            chatbot_id=chatbot_id,
            question=question,
            history=history,
            system_prompt=system_prompt,
        )
        content = " ".join(claim.text for claim in response.claims) or (response.reason or "")
        with session_scope(self._engine) as session:
            session.add(
                ChatMessage(
                    session_id=session_id,
                    role=MessageRole.ASSISTANT,
                    content=content,
                    response_json=response.model_dump(mode="json"),
                )
            )
        return ChatResponse(session_id=session_id, **response.model_dump())

    def _begin_turn(
        self,
        *,
        chatbot_id: UUID,
        question: str,
        session_id: UUID | None,
        user_id: str | None,
    ) -> tuple[UUID, list[ChatTurn], str | None]:
        with session_scope(self._engine) as session:
            chatbot = session.get(Chatbot, chatbot_id)
            if chatbot is None:
                raise NotFoundError("chatbot not found", details={"chatbot_id": str(chatbot_id)})

            if session_id is not None:
                chat_session = session.get(ChatSession, session_id)
                if chat_session is None or chat_session.chatbot_id != chatbot_id:
                    raise NotFoundError(
                        "chat session not found", details={"session_id": str(session_id)}
                    )
            else:
                chat_session = ChatSession(chatbot_id=chatbot_id, user_id=user_id)
                session.add(chat_session)
                session.flush()

            history = self._history(session, chat_session.id)
            session.add(
                ChatMessage(session_id=chat_session.id, role=MessageRole.USER, content=question)
            )
            return chat_session.id, history, chatbot.system_prompt

    def _history(self, session: Session, session_id: UUID) -> list[ChatTurn]:
        if not self._settings.continuity_enabled or self._settings.continuity_turns == 0:
            return []
        rows = session.exec(
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at.desc())  # type: ignore[attr-defined]
            .limit(self._settings.continuity_turns * 2)
        ).all()
        return [{"role": _value(row.role), "content": row.content} for row in reversed(rows)]

    async def respond(
        self,
        *,
        chatbot_id: UUID,
        question: str,
        history: Sequence[ChatTurn] = (),
        system_prompt: str | None = None,
    ) -> RagResponse:
        debug_id = generate_debug_id()
        query = await self._rewrite(question, history)
        vector = await self._embeddings.embed(query)

        candidates = await self._retrieve(chatbot_id, vector)
        RETRIEVAL_CANDIDATES.observe(len(candidates))
        if not candidates:
            return self._refuse(debug_id, "no_context", NO_CONTEXT_REASON)
        if candidates[0].score < self._settings.min_relevance_score:
            logger.info(
                "top candidate below relevance floor",
                extra={"debug_id": debug_id, "score": candidates[0].score},
            )
            return self._refuse(debug_id, "relevance_floor", NO_CONTEXT_REASON)

        ranked = (await self._rerank(query, candidates))[: self._settings.rerank_keep]
        if len(ranked) < self._settings.min_hydrated_chunks:
            return self._refuse(debug_id, "min_hydrated", INSUFFICIENT_CONTEXT_REASON)

        context = assemble_context(ranked, self._settings.max_context_chars)
        if not context.allowed_chunk_ids:
            return self._refuse(
                debug_id, "context_budget", INSUFFICIENT_CONTEXT_REASON, truncated=True
            )

        try:
            raw = await self._llm.complete(
                prompts.answer_messages(
                    question=question,
                    context=context.text,
                    allowed_chunk_ids=context.allowed_chunk_ids,
                    system_prompt=system_prompt,
                ),
                json_mode=True,
            )
        except Exception as exc:
            logger.exception("answer generation failed", extra={"debug_id": debug_id})
            raise AnswerGenerationError() from exc

        return self._verify(debug_id, raw, ranked, context)

    async def _rewrite(self, question: str, history: Sequence[ChatTurn]) -> str:
        if not self._settings.query_rewrite_enabled:
            return question
        window = list(history) if self._settings.continuity_enabled else []
        try:
            rewritten = (await self._llm.complete(prompts.rewrite_messages(question, window))).strip()
        except Exception:
            logger.warning("query rewrite failed; using the original question", exc_info=True)
            return question
        return rewritten if len(rewritten) >= MIN_REWRITE_CHARS else question

    async def _retrieve(self, chatbot_id: UUID, vector: Sequence[float]) -> list[Candidate]:
        namespace = str(chatbot_id)
        for top_k in top_k_schedule(self._settings.initial_top_k, self._settings.max_top_k):
            matches = await self._vector_store.similarity_search(namespace, vector, top_k)
            candidates = self._hydrate(chatbot_id, matches)
            if candidates or len(matches) < top_k:
                return candidates
            logger.info(
                "all matches were orphans; widening search",
                extra={"chatbot_id": namespace, "top_k": top_k},
            )
        return []

    def _hydrate(self, chatbot_id: UUID, matches: Sequence[VectorMatch]) -> list[Candidate]:
        if not matches:
            return []
        with Session(self._engine) as session:
            rows = session.exec(
                select(KnowledgeChunk).where(
                    KnowledgeChunk.chunk_id.in_([match.id for match in matches]),  # type: ignore[attr-defined]
                    KnowledgeChunk.chatbot_id == chatbot_id,
                    KnowledgeChunk.deleted_at.is_(None),  # type: ignore[union-attr]
                )
            ).all()
        live = {row.chunk_id: row for row in rows}

        candidates: list[Candidate] = []
        seen: set[str] = set()
        for match in matches:
            row = live.get(match.id)
            if row is None or match.id in seen or not is_citable(row):
                continue
            seen.add(match.id)
            candidates.append(
                Candidate(
                    chunk_id=row.chunk_id,
                    score=clamp_score(match.score),
                    text=row.text,
                    source_type=_value(row.source_type),
                    start_offset=row.start_offset,
                    end_offset=row.end_offset,
                    title=row.title,
                    uri=row.uri,
                    canonical_url=row.canonical_url,
                    original_url=row.original_url,
                    page_no=row.page_no,
                )
            )
        candidates.sort(key=lambda candidate: candidate.score, reverse=True)
        return candidates

    async def _rerank(self, query: str, candidates: list[Candidate]) -> list[Candidate]:
        if len(candidates) < 2:
            return candidates
        try:
            text = await self._llm.complete(
                prompts.rerank_messages(query, [candidate.text for candidate in candidates]),
                model=self._rerank_model,
            )
        except Exception:
            logger.warning("rerank failed; keeping similarity order", exc_info=True)
            return candidates
        positions = parse_rank_list(text, len(candidates))
        if not positions:
            return candidates
        ranked = [candidates[position - 1] for position in positions]
        ranked.extend(
            candidate for index, candidate in enumerate(candidates, start=1) if index not in positions
        )
        return ranked

    def _verify(
        self,
        debug_id: str,
        raw: str,
        ranked: Sequence[Candidate],
        context: AssembledContext,
    ) -> RagResponse:
        truncated = context.truncated
        try:
            answer = StructuredAnswer.model_validate(json.loads(raw))
        except (ValueError, pydantic.ValidationError):
            return self._refuse(debug_id, "invalid_answer", UNVERIFIED_ANSWER_REASON, truncated)
        if answer.unknown:
            return self._refuse(debug_id, "model_unknown", NO_CONTEXT_REASON, truncated)

        allowed = set(context.allowed_chunk_ids)
        referenced: list[str] = []
        for claim in answer.claims:
            if not claim.supporting_chunk_ids:
                return self._refuse(debug_id, "uncited_claim", UNVERIFIED_ANSWER_REASON, truncated)
            for chunk_id in claim.supporting_chunk_ids:
                if chunk_id not in allowed:
                    return self._refuse(
                        debug_id, "citation_whitelist", UNVERIFIED_ANSWER_REASON, truncated
                    )
                if chunk_id not in referenced:
                    referenced.append(chunk_id)
        if len(answer.claims) < self._settings.min_supported_claims:
            return self._refuse(debug_id, "min_claims", UNVERIFIED_ANSWER_REASON, truncated)

        by_id = {candidate.chunk_id: candidate for candidate in ranked if candidate.chunk_id in allowed}
        sources = [by_id[chunk_id].to_source() for chunk_id in referenced if chunk_id in by_id]
        if len(sources) != len(referenced):
            return self._refuse(debug_id, "citation_mismatch", UNVERIFIED_ANSWER_REASON, truncated)

        CHAT_ANSWERS.inc()
        logger.info(
            "chat answer verified",
            extra={"debug_id": debug_id, "claims": len(answer.claims), "sources": len(sources)},
        )
        return RagResponse(
            claims=[Claim(text=claim.text, supporting_chunk_ids=claim.supporting_chunk_ids) for claim in answer.claims],
            unknown=False,
            debug_id=debug_id,
            context_truncated=truncated,
            sources=sources,
        )

    @staticmethod
    def _refuse(debug_id: str, gate: str, reason: str, truncated: bool = False) -> RagResponse:
        CHAT_REFUSALS.labels(gate).inc()
        logger.info("chat refused", extra={"debug_id": debug_id, "gate": gate})
        return RagResponse(
            claims=[],
            unknown=True,
            reason=reason,
            debug_id=debug_id,
            context_truncated=truncated,
            sources=[],
        )
