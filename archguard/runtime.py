"""Wiring of the ingestion runtime from settings.

:func:`build_runtime` assembles every long-lived object a process needs:
pattern registry, scan gateway, detection engine, queue, progress channel,
optional collaborators, orchestrator and worker pool.  The API calls it at
start-up; tests build a :class:`Runtime` by hand with fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import redis.asyncio as aioredis

from archguard.config import Settings, get_settings
from archguard.core.adapters.clamd_socket import ClamdSocketGateway
from archguard.core.archive_extractor import ExtractionLimits
from archguard.core.clamdscan import ClamdscanGateway
from archguard.core.detection_engine import DetectionEngine
from archguard.core.job_queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from archguard.core.orchestrator import Orchestrator
from archguard.core.patterns import PatternRegistry, load_custom_patterns
from archguard.core.progress import ProgressChannel
from archguard.core.scan_gateway import ScanGateway
from archguard.services.detection_sink import JsonFileDetectionSink
from archguard.services.progress_relay import RedisProgressRelay
from archguard.services.risk_scorer import HttpRiskScorer
from archguard.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Process-wide ingestion objects."""

    registry: PatternRegistry
    gateway: ScanGateway
    orchestrator: Orchestrator
    pool: WorkerPool
    progress: ProgressChannel
    redis: Optional[Any] = None
    extras: dict[str, Any] = field(default_factory=dict)

    async def start(self) -> None:
        await self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()
        relay = self.extras.get("relay")
        if relay is not None:
            await relay.drain()
        if self.redis is not None:
            await self.redis.aclose()


def build_gateway(settings: Settings) -> ScanGateway:
    if settings.scanner_backend == "clamd":
        return ClamdSocketGateway(
            settings.clamd_socket_path,
            host=settings.clamd_host,
            port=settings.clamd_port,
            allowed_roots=settings.allowed_scan_roots,
        )
    return ClamdscanGateway(
        command=settings.scanner_command,
        args=settings.scanner_args,
        allowed_roots=settings.allowed_scan_roots,
        max_concurrent=settings.max_concurrent_scans,
    )


def build_registry(settings: Settings) -> PatternRegistry:
    registry = PatternRegistry.with_builtins()
    load_custom_patterns(registry, settings.custom_patterns_path)
    return registry


def build_runtime(settings: Optional[Settings] = None) -> Runtime:
    """Build the runtime described by *settings* (default: :func:`get_settings`)."""
    settings = settings or get_settings()

    redis_client = None
    if settings.queue_backend == "redis":
        redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        queue: JobQueue = RedisJobQueue(redis_client)
    else:
        queue = InMemoryJobQueue()

    progress = ProgressChannel()
    extras: dict[str, Any] = {}
    if redis_client is not None:
        relay = RedisProgressRelay(redis_client)
        progress.add_listener(relay)
        extras["relay"] = relay

    registry = build_registry(settings)
    gateway = build_gateway(settings)
    orchestrator = Orchestrator(
        gateway=gateway,
        engine=DetectionEngine(registry),
        queue=queue,
        progress=progress,
        work_dir=settings.work_dir,
        limits=ExtractionLimits.from_settings(settings),
        max_scan_size=settings.max_scan_file_size,
        scan_timeout=settings.scan_timeout_seconds,
        risk_scorer=(
            HttpRiskScorer(settings.risk_scorer_url, timeout=settings.risk_scorer_timeout_seconds)
            if settings.risk_scorer_url
            else None
        ),
        risk_scorer_timeout=settings.risk_scorer_timeout_seconds,
        sink=JsonFileDetectionSink(settings.detections_output_path) if settings.detections_output_path else None,
        max_retained_jobs=settings.max_retained_jobs,
    )
    pool = WorkerPool(orchestrator, queue, size=settings.worker_pool_size)
    logger.info(
        "Runtime built scanner=%s queue=%s workers=%d patterns=%d",
        settings.scanner_backend,
        settings.queue_backend,
        settings.worker_pool_size,
        len(registry),
    )
    return Runtime(
        registry=registry,
        gateway=gateway,
        orchestrator=orchestrator,
        pool=pool,
        progress=progress,
        redis=redis_client,
        extras=extras,
    )
