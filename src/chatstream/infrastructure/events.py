from __future__ import annotations

"""Best-effort domain event publishing to Redis pub/sub.

Publishing is a no-op unless REDIS_URL is set; connection and publish
failures are logged and never reach the caller.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

import redis


logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "chatstream.events."


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[redis.Redis] = None
        self._connect()

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            logger.debug("redis_connect_failed", extra={"err": str(exc)})
            self._client = None

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self._client:
            self._connect()
        if not self._client:
            return
        try:
            self._client.publish(channel, json.dumps(payload, default=str))
        except Exception as exc:
            logger.debug("redis_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def _publish_blocking(event_type: str, payload: Dict[str, Any]) -> None:
    publisher = _get_publisher()
    if not publisher:
        return
    publisher.publish(f"{CHANNEL_PREFIX}{event_type}", payload)


async def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    """Publish from a worker thread; the redis client calls block."""
    if _publisher is None and not os.getenv("REDIS_URL"):
        return
    await asyncio.to_thread(_publish_blocking, event_type, payload)


def reset_publisher() -> None:
    global _publisher
    _publisher = None
