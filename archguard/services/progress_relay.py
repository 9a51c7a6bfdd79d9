"""RedisProgressRelay — forwards progress events to Redis pub/sub.

Registered as a :class:`~archguard.core.progress.ProgressChannel` listener so
observers outside the worker process (a push-notification gateway, another
API replica) can follow a job on ``archguard:progress:<job_id>``.

Publishing is fire-and-forget: the listener schedules the ``PUBLISH`` as a
task and returns.  Tasks are chained per job so one job's events reach Redis
in the order they were emitted.

Usage::

    relay = RedisProgressRelay(redis.asyncio.from_url(settings.redis_url))
    channel.add_listener(relay)

    async for event in relay.listen(job_id):
        print(event["stage"], event["percentage"])
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

from redis.exceptions import RedisError

from archguard.core.progress import ProgressEvent

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "archguard:progress:"

#: Stages after which no further events arrive for a job.
_TERMINAL_STAGES = frozenset({"completed", "failed"})


def channel_name(job_id: str) -> str:
    return f"{CHANNEL_PREFIX}{job_id}"


class RedisProgressRelay:
    """Progress listener publishing JSON events to Redis.

    Args:
        redis: A ``redis.asyncio.Redis`` (or compatible) client.
        loop: Event loop to schedule publishes on; defaults to the loop
            running when the relay is first called.
    """

    def __init__(self, redis: Any, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._redis = redis
        self._loop = loop
        self._tails: dict[str, asyncio.Task[None]] = {}

    def __call__(self, event: ProgressEvent) -> None:
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._schedule(event)
        else:
            loop.call_soon_threadsafe(self._schedule, event)

    def _schedule(self, event: ProgressEvent) -> None:
        previous = self._tails.get(event.job_id)
        task = self._loop.create_task(self._publish(event, previous))
        self._tails[event.job_id] = task
        if event.stage in _TERMINAL_STAGES:
            task.add_done_callback(lambda _t, job_id=event.job_id: self._forget(job_id, _t))

    def _forget(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tails.get(job_id) is task:
            del self._tails[job_id]

    async def _publish(self, event: ProgressEvent, previous: Optional[asyncio.Task[None]]) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            await self._redis.publish(channel_name(event.job_id), json.dumps(event.to_dict()))
        except RedisError as exc:
            logger.warning("Progress relay publish failed job_id=%s stage=%s: %s", event.job_id, event.stage, exc)

    async def drain(self) -> None:
        """Wait for every scheduled publish to finish."""
        pending = list(self._tails.values())
        if pending:
            await asyncio.wait(pending)

    async def listen(self, job_id: str) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded events for *job_id* until a terminal stage arrives."""
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel_name(job_id))
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                event = json.loads(data)
                yield event
                if event.get("stage") in _TERMINAL_STAGES:
                    return
        finally:
            await pubsub.unsubscribe(channel_name(job_id))
            await pubsub.aclose()
