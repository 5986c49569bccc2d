"""HTTP surface for enqueueing ingestion, polling jobs and chatting."""

from .app import create_app

__all__ = ["create_app"]
