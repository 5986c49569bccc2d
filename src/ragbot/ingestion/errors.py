"""Exception types raised while staging jobs and draining the vector outbox."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class IngestionError(Exception):
    """Base exception providing retry metadata."""

    message: str
    retryable: bool = True

    def __str__(self) -> str:
        return self.message


class StagingError(IngestionError):
    """Staging aborted; the transaction is rolled back and the job fails."""


class CitationIntegrityError(StagingError):
    """A chunk is missing an anchor (uri, page number or valid offsets)."""


class OutboxOperationError(IngestionError):
    """An embedding or vector index call for one outbox row failed."""


class ScraperError(IngestionError):
    """The scraper returned an error or an unusable dataset."""
