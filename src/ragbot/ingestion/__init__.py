"""Knowledge ingestion: job queue, staging, vector outbox and finalization."""

from .errors import CitationIntegrityError, IngestionError, OutboxOperationError, StagingError
from .events import (
    InMemoryProvisioningPublisher,
    ProvisioningEvent,
    ProvisioningEventPublisher,
    RedisProvisioningPublisher,
)
from .finalizer import JobFinalizer
from .jobs import JobProcessor
from .outbox import OutboxDrainer
from .queue import EnqueuedJob, IngestionQueue, JobSnapshot
from .staging import ChunkStager, SourceDocument
from .worker import IngestionWorker, build_worker

__all__ = [
    "CitationIntegrityError",
    "IngestionError",
    "OutboxOperationError",
    "StagingError",
    "InMemoryProvisioningPublisher",
    "ProvisioningEvent",
    "ProvisioningEventPublisher",
    "RedisProvisioningPublisher",
    "JobFinalizer",
    "JobProcessor",
    "OutboxDrainer",
    "EnqueuedJob",
    "IngestionQueue",
    "JobSnapshot",
    "ChunkStager",
    "SourceDocument",
    "IngestionWorker",
    "build_worker",
]
