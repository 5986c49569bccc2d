"""Shared configuration, logging, persistence and error primitives."""

from .config import AppSettings, Environment
from .errors import (
    AnswerGenerationError,
    ConfigurationError,
    CoreError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "AppSettings",
    "Environment",
    "AnswerGenerationError",
    "ConfigurationError",
    "CoreError",
    "NotFoundError",
    "ValidationError",
]
