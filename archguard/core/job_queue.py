"""Job intake queue abstraction.

The orchestrator's intake goes through the minimal :class:`JobQueue`
contract (``enqueue`` / ``dequeue`` / ``ack``) so the in-memory queue used in
tests and development and the durable Redis queue are interchangeable.

:class:`RedisJobQueue` gives at-least-once delivery: ``dequeue`` atomically
moves a ticket from the pending list to a processing list (``BLMOVE``), and
only ``ack`` removes it.  Tickets left in the processing list by a crashed
worker are returned to the pending list by :meth:`RedisJobQueue.requeue_unacked`
at start-up.

Usage::

    queue = RedisJobQueue(redis.asyncio.from_url(settings.redis_url))
    await queue.requeue_unacked()
    ticket = await queue.dequeue(timeout=5)
    ...
    await queue.ack(ticket.job_id)
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobTicket:
    """What travels through the queue: enough to rebuild the job."""

    job_id: str
    archive_path: str
    declared_size: int

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "JobTicket":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        return cls(
            job_id=str(data["job_id"]),
            archive_path=str(data["archive_path"]),
            declared_size=int(data["declared_size"]),
        )


class JobQueue(abc.ABC):
    """Minimal queue contract consumed by the worker pool."""

    @abc.abstractmethod
    async def enqueue(self, ticket: JobTicket) -> None:
        """Add *ticket* to the pending queue."""

    @abc.abstractmethod
    async def dequeue(self, timeout: Optional[float] = None) -> Optional[JobTicket]:
        """Take the oldest pending ticket.

        Waits up to *timeout* seconds (forever when ``None``) and returns
        ``None`` if nothing arrived.  The ticket stays in flight until
        :meth:`ack`.
        """

    @abc.abstractmethod
    async def ack(self, job_id: str) -> None:
        """Mark the in-flight ticket for *job_id* as done."""

    async def requeue_unacked(self) -> int:
        """Return in-flight tickets to the pending queue; returns the count."""
        return 0

    async def close(self) -> None:
        return None


class InMemoryJobQueue(JobQueue):
    """Process-local queue for tests and single-process development."""

    def __init__(self) -> None:
        self._pending: asyncio.Queue[JobTicket] = asyncio.Queue()
        self._in_flight: dict[str, JobTicket] = {}

    async def enqueue(self, ticket: JobTicket) -> None:
        await self._pending.put(ticket)

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[JobTicket]:
        try:
            if timeout is None:
                ticket = await self._pending.get()
            else:
                ticket = await asyncio.wait_for(self._pending.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        self._in_flight[ticket.job_id] = ticket
        return ticket

    async def ack(self, job_id: str) -> None:
        self._in_flight.pop(job_id, None)

    async def requeue_unacked(self) -> int:
        tickets = list(self._in_flight.values())
        self._in_flight.clear()
        for ticket in tickets:
            await self._pending.put(ticket)
        return len(tickets)

    @property
    def pending(self) -> int:
        return self._pending.qsize()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)


class RedisJobQueue(JobQueue):
    """Durable queue on two Redis lists.

    Args:
        redis: A ``redis.asyncio.Redis`` (or compatible) client.
        key: Pending list; producers push left, consumers take right.
        processing_key: In-flight list.
    """

    def __init__(
        self,
        redis: Any,
        *,
        key: str = "archguard:jobs",
        processing_key: Optional[str] = None,
    ) -> None:
        self._redis = redis
        self._key = key
        self._processing_key = processing_key or f"{key}:processing"
        self._raw_by_job: dict[str, Any] = {}

    async def enqueue(self, ticket: JobTicket) -> None:
        await self._redis.lpush(self._key, ticket.to_json())
        logger.debug("Job enqueued job_id=%s key=%s", ticket.job_id, self._key)

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[JobTicket]:
        if timeout is not None and timeout <= 0:
            raw = await self._redis.lmove(self._key, self._processing_key, "RIGHT", "LEFT")
        else:
            raw = await self._redis.blmove(
                self._key, self._processing_key, timeout or 0, "RIGHT", "LEFT"
            )
        if raw is None:
            return None
        try:
            ticket = JobTicket.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Dropping malformed job ticket raw=%r error=%s", raw, exc)
            await self._redis.lrem(self._processing_key, 1, raw)
            return None
        self._raw_by_job[ticket.job_id] = raw
        return ticket

    async def ack(self, job_id: str) -> None:
        raw = self._raw_by_job.pop(job_id, None)
        if raw is None:
            for candidate in await self._redis.lrange(self._processing_key, 0, -1):
                try:
                    if JobTicket.from_json(candidate).job_id == job_id:
                        raw = candidate
                        break
                except (ValueError, KeyError, TypeError):
                    continue
        if raw is None:
            logger.warning("Ack for unknown job job_id=%s", job_id)
            return
        await self._redis.lrem(self._processing_key, 1, raw)

    async def requeue_unacked(self) -> int:
        moved = 0
        while await self._redis.lmove(self._processing_key, self._key, "LEFT", "RIGHT") is not None:
            moved += 1
        self._raw_by_job.clear()
        if moved:
            logger.warning("Requeued unacknowledged jobs count=%d key=%s", moved, self._key)
        return moved

    async def pending(self) -> int:
        return int(await self._redis.llen(self._key))

    async def close(self) -> None:
        await self._redis.aclose()
