"""WorkerPool — bounded set of asyncio workers draining the job queue.

Each worker loops: dequeue a ticket, run the job to a terminal state through
the :class:`~archguard.core.orchestrator.Orchestrator`, acknowledge the
ticket.  With ``size`` workers at most ``size`` jobs (and therefore at most
``size`` scanner processes started by the pool) are active at once.

Queue errors (a lost Redis connection, say) are logged and retried after a
short pause; they never end a worker.

A ticket is acknowledged only after the job reached a terminal state, so a
durable queue redelivers jobs interrupted by a crash.  Jobs interrupted by
:meth:`WorkerPool.stop` are marked ``failed`` (``cancelled``) and are not
acknowledged.

Usage::

    pool = WorkerPool(orchestrator, queue, size=settings.worker_pool_size)
    await pool.start()
    ...
    await pool.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from archguard.core.job_queue import JobQueue
from archguard.core.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

#: How long one ``dequeue`` call waits before the worker re-checks for shutdown.
_POLL_SECONDS = 1.0

#: Pause after a queue error before the worker tries again.
_ERROR_BACKOFF_SECONDS = 1.0


class WorkerPool:
    """Fixed-size pool of job workers.

    Args:
        orchestrator: Runs each job.
        queue: Intake queue to drain.
        size: Number of concurrent workers.
    """

    def __init__(self, orchestrator: Orchestrator, queue: JobQueue, size: int = 2) -> None:
        if size < 1:
            raise ValueError("WorkerPool size must be at least 1")
        self._orchestrator = orchestrator
        self._queue = queue
        self._size = size
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping: Optional[asyncio.Event] = None
        self._active = 0

    @property
    def size(self) -> int:
        return self._size

    @property
    def active_jobs(self) -> int:
        return self._active

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Requeue unacknowledged tickets and spawn the workers."""
        if self._tasks:
            return
        recovered = await self._queue.requeue_unacked()
        if recovered:
            logger.warning("Recovered unacknowledged jobs count=%d", recovered)
        self._stopping = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"archguard-worker-{i}")
            for i in range(self._size)
        ]
        logger.info("Worker pool started size=%d", self._size)

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Stop accepting jobs; cancel workers still busy after *grace_seconds*."""
        if not self._tasks:
            return
        assert self._stopping is not None
        self._stopping.set()
        _, pending = await asyncio.wait(self._tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped cancelled=%d", len(pending))

    async def _worker(self, index: int) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                ticket = await self._queue.dequeue(timeout=_POLL_SECONDS)
            except Exception:
                logger.exception("Worker %d failed to dequeue; retrying in %.1fs", index, _ERROR_BACKOFF_SECONDS)
                await self._backoff()
                continue
            if ticket is None:
                continue
            job = self._orchestrator.job_for_ticket(ticket)
            logger.debug("Worker %d picked job job_id=%s", index, job.id)
            self._active += 1
            try:
                await self._orchestrator.run(job)
            except Exception:
                # run() records job-level failures itself; reaching this means
                # the orchestrator itself broke. Keep the worker alive.
                logger.exception("Worker %d crashed on job job_id=%s", index, job.id)
            finally:
                self._active -= 1
            try:
                await self._queue.ack(ticket.job_id)
            except Exception:
                # The ticket stays unacknowledged and is requeued on the next start.
                logger.exception("Worker %d failed to ack job job_id=%s", index, ticket.job_id)
                await self._backoff()

    async def _backoff(self) -> None:
        assert self._stopping is not None
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=_ERROR_BACKOFF_SECONDS)
        except asyncio.TimeoutError:
            pass
