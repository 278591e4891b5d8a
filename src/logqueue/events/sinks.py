"""Transports for job events.

A sink receives ``(topic, event)`` pairs from the EventChannel. Sinks may
raise; the channel isolates the pipeline from their failures.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)

EVENTS_CHANNEL_PREFIX = "logqueue:events:"


@runtime_checkable
class EventSink(Protocol):
    async def publish(self, topic: str, event: dict[str, Any]) -> None: ...


class MemorySink:
    """Keep every published event in order. Used by tests and the CLI."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        self.events.append((topic, event))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for _, event in self.events if event.get("type") == event_type]

    def clear(self) -> None:
        self.events.clear()


class LoggingSink:
    """Write events to the log instead of a live transport."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        logger.log(self._level, "%s -> %s", topic, json.dumps(event, default=str))


class RedisPubSubSink:
    """Publish events as JSON on a per-topic Redis pub/sub channel.

    Subscribers (a websocket gateway, a dashboard) listen on
    ``logqueue:events:user:{user_id}`` and forward to the browser.

    Args:
        client:  A ``redis.asyncio.Redis`` client.
        prefix:  Channel name prefix.
    """

    def __init__(self, client: Any, prefix: str = EVENTS_CHANNEL_PREFIX) -> None:
        self._client = client
        self._prefix = prefix

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        receivers = await self._client.publish(
            f"{self._prefix}{topic}", json.dumps(event, default=str)
        )
        if not receivers:
            logger.debug("No subscribers on %s%s", self._prefix, topic)


class FanOutSink:
    """Deliver to several sinks; one failing sink does not starve the others."""

    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self._sinks = list(sinks)

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        for sink in self._sinks:
            try:
                await sink.publish(topic, event)
            except Exception as exc:
                logger.warning("Event sink %s failed: %s", type(sink).__name__, exc)
