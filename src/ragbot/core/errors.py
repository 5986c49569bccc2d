"""Errors shared by the HTTP API and the ingestion worker.

Each subclass fixes its HTTP status and machine-readable code; the API renders
them as problem-details bodies through ``CoreError.to_dict``.
"""

from __future__ import annotations

from collections.abc import Mapping
from http import HTTPStatus
from typing import Any, ClassVar

PROBLEM_TYPE_BASE = "https://ragbot.dev/problems/"


class CoreError(Exception):
    """Base exception carrying problem details."""

    status: ClassVar[HTTPStatus] = HTTPStatus.INTERNAL_SERVER_ERROR
    default_code: ClassVar[str] = "core_error"

    def __init__(
        self,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = dict(details or {})

    @property
    def status_code(self) -> int:
        return int(self.status)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "type": PROBLEM_TYPE_BASE + self.code,
            "title": self.message,
            "status": self.status_code,
            "code": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(CoreError):
    """A chatbot, source, job or chat session does not exist."""

    status = HTTPStatus.NOT_FOUND
    default_code = "not_found"


class ValidationError(CoreError):
    status = HTTPStatus.UNPROCESSABLE_ENTITY
    default_code = "validation_error"


class ConfigurationError(CoreError):
    """Missing credentials or a backend disallowed in this environment.

    Raised at startup or first use and never downgraded to a fallback.
    """

    default_code = "configuration_error"


class AnswerGenerationError(CoreError):
    """The answering model call failed; surfaced to the caller as an upstream outage."""

    status = HTTPStatus.BAD_GATEWAY
    default_code = "answer_generation_failed"

    def __init__(self, message: str = "answer generation failed") -> None:
        super().__init__(message)
