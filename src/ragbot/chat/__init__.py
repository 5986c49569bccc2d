"""Citation-gated question answering over a chatbot's knowledge."""

from .schemas import ChatRequest, ChatResponse, Claim, RagResponse, SourceCitation, StructuredAnswer
from .service import ChatService

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "ChatService",
    "Claim",
    "RagResponse",
    "SourceCitation",
    "StructuredAnswer",
]
