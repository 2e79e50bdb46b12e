"""Inbound publish/subscribe channels delivering gap alert payloads."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, AsyncIterator, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class AlertChannel(Protocol):
    def listen(self) -> AsyncIterator[dict[str, Any]]:
        ...  # pragma: no cover - typing hook


def _unwrap(raw: Any, event_name: str) -> dict[str, Any] | None:
    """Return the payload of an ``{"event": ..., "payload": ...}`` envelope."""

    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        message = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        logger.warning("Dropping undecodable channel message: %r", raw)
        return None
    if not isinstance(message, dict):
        logger.warning("Dropping channel message that is not an object: %r", message)
        return None
    if message.get("event") != event_name:
        logger.debug("Ignoring channel event %r", message.get("event"))
        return None
    payload = message.get("payload")
    if not isinstance(payload, dict):
        logger.warning("Dropping %s message without payload", event_name)
        return None
    return payload


class RedisAlertChannel:
    """Subscribe to a Redis pub/sub channel for one named event type."""

    def __init__(
        self,
        redis_url: str,
        *,
        channel: str = "gap-alerts",
        event_name: str = "gap-alert",
        client: aioredis.Redis | None = None,
    ) -> None:
        self._own_client = client is None
        self._client = client or aioredis.from_url(redis_url)
        self._channel = channel
        self._event_name = event_name

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self._channel)
        logger.info("Subscribed to %s", self._channel)
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                payload = _unwrap(message["data"], self._event_name)
                if payload is not None:
                    yield payload
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()
            logger.info("Unsubscribed from %s", self._channel)

    async def close(self) -> None:
        if self._own_client:
            await self._client.aclose()


class SimulatedAlertChannel:
    """In-process channel; ``publish`` may be called from another thread."""

    def __init__(self, event_name: str = "gap-alert") -> None:
        self._event_name = event_name
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready = threading.Event()

    @property
    def ready(self) -> threading.Event:
        return self._ready

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        self._loop = asyncio.get_running_loop()
        self._ready.set()
        while True:
            message = await self._queue.get()
            if message is None:
                break
            payload = _unwrap(message, self._event_name)
            if payload is not None:
                yield payload

    def publish(self, payload: Any, *, event: str | None = None) -> None:
        """Wrap ``payload`` in an envelope and hand it to the listener."""

        self._put({"event": event or self._event_name, "payload": payload})

    def publish_raw(self, message: Any) -> None:
        self._put(message)

    def close(self) -> None:
        if not self._ready.is_set():
            return
        self._put(None)

    def _put(self, message: Any) -> None:
        if not self._ready.wait(timeout=1) or self._loop is None:
            raise RuntimeError("Channel not listening")
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(message)
            return
        future = asyncio.run_coroutine_threadsafe(self._queue.put(message), self._loop)
        future.result()


__all__ = ["AlertChannel", "RedisAlertChannel", "SimulatedAlertChannel"]
