"""Best-effort change notifications.

Nothing in the settlement flow depends on delivery. Publishing never raises;
failures are logged and subscribers recover by re-fetching state.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Protocol

from .config import get_notification_channel, get_redis_url

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict], None]


class NotificationBus(Protocol):
    def publish(self, event: dict) -> None:
        """Deliver ``event`` to subscribers if possible."""

    def subscribe(self, callback: Subscriber) -> None:
        """Register ``callback`` for future events."""


class NullNotificationBus:
    def publish(self, event: dict) -> None:
        pass

    def subscribe(self, callback: Subscriber) -> None:
        pass


class InMemoryNotificationBus:
    """Synchronous in-process fan-out."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: dict) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.warning("Subscriber %r failed on %s", callback, event.get("type"), exc_info=True)


class RedisNotificationBus:
    """Publish events as JSON on a Redis pub/sub channel."""

    def __init__(self, client, channel: str | None = None) -> None:
        self._client = client
        self.channel = channel or get_notification_channel()

    @classmethod
    def from_url(cls, url: str | None = None, channel: str | None = None) -> "RedisNotificationBus":
        import redis

        return cls(redis.from_url(url or get_redis_url()), channel)

    def publish(self, event: dict) -> None:
        try:
            self._client.publish(self.channel, json.dumps(event, default=str))
        except Exception:
            logger.warning("Could not publish %s to %s", event.get("type"), self.channel, exc_info=True)

    def subscribe(self, callback: Subscriber):
        """Listen on a background thread; returns the pubsub thread."""
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)

        def handler(message) -> None:
            try:
                callback(json.loads(message["data"]))
            except Exception:
                logger.warning("Subscriber %r failed on %s", callback, self.channel, exc_info=True)

        pubsub.subscribe(**{self.channel: handler})
        return pubsub.run_in_thread(sleep_time=0.01, daemon=True)


def default_bus() -> NotificationBus:
    """Return a Redis bus when ``REDIS_URL`` is set, otherwise in-process."""
    if get_redis_url():
        return RedisNotificationBus.from_url()
    return InMemoryNotificationBus()


__all__ = [
    "NotificationBus",
    "NullNotificationBus",
    "InMemoryNotificationBus",
    "RedisNotificationBus",
    "default_bus",
]
