"""Outbound run notifications."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Protocol

from redis.asyncio import Redis

from connectors.base import RunRecord
from connectors.config import SourceDefinition

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "connector-events"


class NotificationSink(Protocol):
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        ...


class NullNotificationSink:
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.debug("Dropping %s notification for %s", event_type, payload.get("connector_id"))


class RedisNotificationSink:
    """Publish notifications as JSON messages on a Redis pub/sub channel."""

    def __init__(
        self,
        redis_url: str | None = None,
        channel: str | None = None,
        client: Redis | None = None,
    ) -> None:
        self.channel = channel or os.getenv("NOTIFICATION_CHANNEL", DEFAULT_CHANNEL)
        if client is None:
            client = Redis.from_url(redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0"))
        self._client = client

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        message = json.dumps(
            {
                "event": event_type,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": payload,
            },
            default=str,
        )
        await self._client.publish(self.channel, message)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_notification_sink() -> NotificationSink:
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return NullNotificationSink()
    return RedisNotificationSink(redis_url)


def run_payload(source: SourceDefinition, record: RunRecord) -> dict[str, Any]:
    return {
        "connector_id": source.id,
        "connector_name": source.name,
        "connector_type": source.source_type.value,
        "run_id": record.id,
        "status": record.status.value,
        "documents_added": record.documents_added,
        "documents_updated": record.documents_updated,
        "documents_removed": record.documents_removed,
        "error_message": record.error_message,
    }
