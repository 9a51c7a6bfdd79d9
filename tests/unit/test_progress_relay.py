"""Unit tests for archguard/services/progress_relay.py (fakeredis pub/sub)."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from redis.exceptions import RedisError

from archguard.core.progress import ProgressChannel, ProgressEvent
from archguard.services.progress_relay import RedisProgressRelay, channel_name


@pytest_asyncio.fixture
async def fake_redis():
    fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield fake
    await fake.aclose()


async def _read(pubsub, count: int) -> list[dict]:
    events = []
    for _ in range(50):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
        if message is not None:
            events.append(json.loads(message["data"]))
        if len(events) == count:
            break
    return events


def test_channel_name() -> None:
    assert channel_name("abc") == "archguard:progress:abc"


async def test_events_published_in_order(fake_redis) -> None:
    pubsub = fake_redis.pubsub()
    await pubsub.subscribe(channel_name("job-1"))

    relay = RedisProgressRelay(fake_redis)
    channel = ProgressChannel()
    channel.add_listener(relay)
    for stage, pct in [("queued", 0), ("scanning", 10), ("extracting", 35), ("completed", 100)]:
        channel.publish("job-1", stage, pct)
    await relay.drain()

    events = await _read(pubsub, 4)
    assert [e["stage"] for e in events] == ["queued", "scanning", "extracting", "completed"]
    assert events[-1]["percentage"] == 100
    await pubsub.aclose()


async def test_publish_failure_is_logged_not_raised(caplog) -> None:
    redis = MagicMock()
    redis.publish = AsyncMock(side_effect=RedisError("connection lost"))
    relay = RedisProgressRelay(redis)
    relay(ProgressEvent(job_id="job-1", stage="scanning", percentage=10))
    await relay.drain()
    assert "Progress relay publish failed" in caplog.text


async def test_listen_stops_at_terminal_stage(fake_redis) -> None:
    relay = RedisProgressRelay(fake_redis)
    received: list[str] = []

    async def _consume() -> None:
        async for event in relay.listen("job-9"):
            received.append(event["stage"])

    consumer = asyncio.create_task(_consume())
    for _ in range(100):
        subscribed = await fake_redis.pubsub_numsub(channel_name("job-9"))
        if subscribed and subscribed[0][1]:
            break
        await asyncio.sleep(0.01)

    relay(ProgressEvent(job_id="job-9", stage="scanning", percentage=10))
    relay(ProgressEvent(job_id="job-9", stage="failed", percentage=100))
    relay(ProgressEvent(job_id="job-9", stage="ignored", percentage=100))
    await relay.drain()
    await asyncio.wait_for(consumer, timeout=2)

    assert received == ["scanning", "failed"]
