import asyncio
import json
import time
import types

import pytest

from chatstream.infrastructure import events


class FakeRedisClient:
    attempt = 0
    published = []
    publish_should_fail = False
    publish_delay = 0.0

    def ping(self):
        if FakeRedisClient.attempt == 0:
            FakeRedisClient.attempt += 1
            raise Exception("connect failed")

    def publish(self, channel, payload):
        if FakeRedisClient.publish_delay:
            time.sleep(FakeRedisClient.publish_delay)
        FakeRedisClient.published.append((channel, payload))
        if FakeRedisClient.publish_should_fail:
            FakeRedisClient.publish_should_fail = False
            raise Exception("publish failed")


def _fake_redis(monkeypatch):
    FakeRedisClient.attempt = 0
    FakeRedisClient.published = []
    FakeRedisClient.publish_should_fail = False
    FakeRedisClient.publish_delay = 0.0

    def from_url(url, socket_timeout=0.5):
        return FakeRedisClient()

    module = types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=staticmethod(from_url)))
    monkeypatch.setattr(events, "redis", module)


@pytest.mark.asyncio
async def test_publish_event_no_url_returns_quietly(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    assert events._get_publisher() is None
    await events.publish_event("turn.completed", {"payload": "ignored"})


@pytest.mark.asyncio
async def test_redis_publisher_recovers_after_connection_failure(monkeypatch):
    _fake_redis(monkeypatch)
    monkeypatch.setenv("REDIS_URL", "redis://localhost")

    publisher = events._get_publisher()
    assert publisher is not None

    await events.publish_event("turn.completed", {"conversation_id": "c1"})
    assert FakeRedisClient.attempt == 1  # first ping failed once
    channel, payload = FakeRedisClient.published[-1]
    assert channel == "chatstream.events.turn.completed"
    assert json.loads(payload) == {"conversation_id": "c1"}

    FakeRedisClient.publish_should_fail = True
    await events.publish_event("turn.failed", {"code": "quota_exceeded"})  # publish errors are swallowed
    assert events._get_publisher() is publisher

    events.reset_publisher()
    assert events._publisher is None


@pytest.mark.asyncio
async def test_slow_redis_publish_does_not_block_event_loop(monkeypatch):
    _fake_redis(monkeypatch)
    FakeRedisClient.attempt = 1
    FakeRedisClient.publish_delay = 0.3
    monkeypatch.setenv("REDIS_URL", "redis://localhost")

    pending = asyncio.create_task(events.publish_event("turn.completed", {"conversation_id": "c1"}))
    started = time.monotonic()
    await asyncio.sleep(0.01)
    elapsed = time.monotonic() - started
    await pending

    assert elapsed < 0.2
    assert FakeRedisClient.published[-1][0] == "chatstream.events.turn.completed"
