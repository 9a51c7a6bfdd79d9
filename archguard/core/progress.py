"""ProgressChannel — in-process, per-job ordered progress fan-out.

:meth:`ProgressChannel.publish` is synchronous and never blocks: each event is
put on the unbounded queue of every matching subscriber and control returns
immediately.  Events published while nobody is subscribed are dropped.

Ordering: every subscriber has its own FIFO queue and events are appended in
publish order, so one subscriber sees a job's events in the order the
orchestrator emitted them.  Interleaving across jobs is unconstrained.

Usage::

    channel = ProgressChannel()
    async with channel.subscribe(job_id) as events:
        async for event in events:
            print(event.stage, event.percentage)
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Listener = Callable[["ProgressEvent"], None]


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    stage: str
    percentage: int
    message: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_CLOSED = object()


class Subscription:
    """Async iterator over the events delivered to one subscriber.

    Iteration ends after :meth:`close`.  Also usable as an async context
    manager that closes itself on exit.
    """

    def __init__(self, channel: "ProgressChannel", job_id: Optional[str]) -> None:
        self.job_id = job_id
        self._channel = channel
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._closed = False

    def _deliver(self, item: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._remove(self)
        self._deliver(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def get(self, timeout: Optional[float] = None) -> ProgressEvent:
        """Return the next event, waiting at most *timeout* seconds."""
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class ProgressChannel:
    """Fan-out of :class:`ProgressEvent` objects to subscribers and listeners.

    Listeners are plain callables (e.g. the Redis relay) invoked synchronously
    for every event; a failing listener is logged and does not affect others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Listener] = []

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        """Subscribe to one job's events, or to every job when *job_id* is ``None``.

        Must be called from a running event loop.
        """
        subscription = Subscription(self, job_id)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, job_id: str, stage: str, percentage: int, message: str = "") -> ProgressEvent:
        event = ProgressEvent(job_id=job_id, stage=stage, percentage=percentage, message=message)
        with self._lock:
            targets = [s for s in self._subscriptions if s.job_id in (None, job_id)]
            listeners = list(self._listeners)
            # Delivery happens under the lock so concurrent publishers for
            # the same job cannot reorder events in a subscriber queue.
            for subscription in targets:
                subscription._deliver(event)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed job_id=%s stage=%s", job_id, stage)
        logger.debug("Progress job_id=%s stage=%s percentage=%d subscribers=%d", job_id, stage, percentage, len(targets))
        return event

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for s in self._subscriptions if job_id is None or s.job_id in (None, job_id))
