"""Chat-completion client used for query rewrite, rerank and answer generation."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol, TypedDict

from openai import AsyncOpenAI

from ragbot.core.config import AppSettings
from ragbot.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ChatTurn(TypedDict):
    role: str
    content: str


class LLMClient(Protocol):
    async def complete(
        self,
        messages: Sequence[ChatTurn],
        *,
        json_mode: bool = False,
        model: str | None = None,
    ) -> str:
        ...


class OpenAIChatClient:
    """Thin wrapper over ``AsyncOpenAI.chat.completions`` returning the message text."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.2,
        timeout: float = 30.0,
        client: Any | None = None,
    ) -> None:
        self._model = model
        self._temperature = temperature
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def complete(
        self,
        messages: Sequence[ChatTurn],
        *,
        json_mode: bool = False,
        model: str | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model or self._model,
            "messages": [dict(message) for message in messages],
            "temperature": self._temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._client.chat.completions.create(**kwargs)
        content = response.choices[0].message.content if response.choices else None
        return content or ""


def create_llm_client(settings: AppSettings) -> LLMClient:
    if not settings.openai.api_key:
        raise ConfigurationError("OPENAI_API_KEY is required for chat completions")
    return OpenAIChatClient(
        api_key=settings.openai.api_key,
        model=settings.openai.model,
        base_url=settings.openai.base_url,
        temperature=settings.openai.temperature,
        timeout=settings.openai.timeout_seconds,
    )
