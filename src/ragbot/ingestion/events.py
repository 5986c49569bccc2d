"""Provisioning events emitted when an ingestion job reaches a terminal state."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Literal, Protocol

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

EventType = Literal["completed", "failed"]


@dataclass(slots=True, frozen=True)
class ProvisioningEvent:
    type: EventType
    chatbot_id: str
    job_id: str
    status: str
    error: str | None = None


class ProvisioningEventPublisher(Protocol):
    async def publish(self, event: ProvisioningEvent) -> None:
        ...


class RedisProvisioningPublisher:
    """Emit provisioning events over Redis Pub/Sub, one channel per chatbot."""

    def __init__(self, *, redis: Redis, channel_template: str = "provisioning:{chatbot_id}") -> None:
        self._redis = redis
        self._channel_template = channel_template

    async def publish(self, event: ProvisioningEvent) -> None:
        channel = self._channel_template.format(chatbot_id=event.chatbot_id)
        try:
            await self._redis.publish(channel, json.dumps(asdict(event)))
        except Exception:  # pragma: no cover - best effort logging
            logger.exception(
                "failed to publish provisioning event",
                extra={"channel": channel, "job_id": event.job_id},
            )

    async def close(self) -> None:
        await self._redis.aclose()


@dataclass
class InMemoryProvisioningPublisher:
    """Keeps events in process; used when no Redis URL is configured."""

    events: list[ProvisioningEvent] = field(default_factory=list)

    async def publish(self, event: ProvisioningEvent) -> None:
        logger.info(
            "provisioning event",
            extra={"chatbot_id": event.chatbot_id, "job_id": event.job_id, "type": event.type},
        )
        self.events.append(event)


def create_event_publisher(redis_url: str | None, channel_template: str) -> ProvisioningEventPublisher:
    if not redis_url:
        return InMemoryProvisioningPublisher()
    return RedisProvisioningPublisher(
        redis=Redis.from_url(redis_url, decode_responses=True),
        channel_template=channel_template,
    )
