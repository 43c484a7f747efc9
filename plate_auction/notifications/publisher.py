"""Hand settlement and sale events to the notification system."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from google.cloud import pubsub_v1

from ..transport.canonical_json import canonical_dumps

logger = logging.getLogger(__name__)


class _PublisherProtocol:
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:  # pragma: no cover - protocol
        raise NotImplementedError


class _LocalPublisher(_PublisherProtocol):
    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self.published.append((event_type, payload))
        logger.info("[local-notify] %s listing=%s", event_type, payload.get("listing_id"))


class _PubSubPublisher(_PublisherProtocol):
    def __init__(self, options: dict[str, Any]) -> None:
        self._project_id = options.get("project_id")
        if not self._project_id:
            raise ValueError("pubsub backend requires project_id")
        self._topic = options.get("topic", "auction-events")
        self._publisher = pubsub_v1.PublisherClient()

    def _topic_path(self) -> str:
        if self._topic.startswith("projects/"):
            return self._topic
        return self._publisher.topic_path(self._project_id, self._topic)

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        message = canonical_dumps({"event_type": event_type, "payload": payload})
        future = self._publisher.publish(
            self._topic_path(),
            message,
            event_type=event_type,
            listing_id=str(payload.get("listing_id", "")),
        )
        await asyncio.to_thread(future.result)


class NotificationPublisher:
    """Best-effort publisher: failures are logged and never reach the caller."""

    def __init__(self, backend: str = "local", options: dict[str, Any] | None = None) -> None:
        options = options or {}
        if backend == "pubsub":
            self._publisher: _PublisherProtocol = _PubSubPublisher(options)
        elif backend == "local":
            self._publisher = _LocalPublisher()
        else:
            raise ValueError(f"unknown notifications backend {backend}")

    @property
    def backend(self) -> _PublisherProtocol:
        return self._publisher

    async def publish(self, event_type: str, payload: dict[str, Any]) -> bool:
        try:
            await self._publisher.publish(event_type, payload)
        except Exception:
            logger.error(
                "failed to publish %s for listing %s",
                event_type,
                payload.get("listing_id"),
                exc_info=True,
            )
            return False
        return True
