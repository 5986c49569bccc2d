"""Chat endpoint returning citation-backed answers or a refusal."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends

from ragbot.chat.schemas import ChatRequest, ChatResponse
from ragbot.chat.service import ChatService

from ..dependencies import get_chat_service

router = APIRouter(prefix="/v1/chatbots", tags=["chat"])


@router.post("/{chatbot_id}/chat", response_model=ChatResponse)
async def chat(
    chatbot_id: UUID,
    payload: ChatRequest,
    service: Annotated[ChatService, Depends(get_chat_service)],
) -> ChatResponse:
    return await service.chat(
        chatbot_id=chatbot_id,
        message=payload.message,
        session_id=payload.session_id,
        user_id=payload.user_id,
    )
