"""Orchestrator — per-job state machine driving scan, extraction and detection.

:class:`Orchestrator` owns every :class:`~archguard.core.job.IngestionJob` it
creates and is the only component that changes a job's status:

1. **queued**      — upload validated (file exists, size matches declaration)
2. **scanning**    — antivirus verdict via a :class:`~archguard.core.scan_gateway.ScanGateway`
3. **extracting**  — bomb-safe extraction via :mod:`archguard.core.archive_extractor`
4. **detecting**   — PII detection via :class:`~archguard.core.detection_engine.DetectionEngine`,
   followed by best-effort AI re-scoring
5. **completed**   — detections handed to the optional :class:`DetectionSink`

Each stage runs inside an OpenTelemetry span named ``archguard.<stage>``
below a root ``archguard.ingest`` span.  Every status change publishes a
progress event before the next stage starts.

**Fail-secure contract**: a stage error moves the job to ``failed`` with the
error's failure category; an unexpected exception becomes ``internal_error``
tagged with the stage name.  :meth:`Orchestrator.run` never lets an archive
continue past a failed stage and never raises for a job-level failure, so one
bad archive cannot take down the worker processing it.

**Cancellation** is cooperative: :meth:`Orchestrator.cancel` sets a flag that
is checked at each transition boundary.  A running scan is allowed to finish
or time out.  Task cancellation during extraction waits for the extraction thread to
finish so the session directory is removed after the last write.

The job map keeps at most ``max_retained_jobs`` terminal jobs; older ones are
evicted in submission order.

No stage is retried automatically; a failed job must be resubmitted.

Usage::

    orchestrator = Orchestrator(
        gateway=ClamdscanGateway(),
        engine=DetectionEngine(PatternRegistry.with_builtins()),
        queue=InMemoryJobQueue(),
        progress=ProgressChannel(),
        work_dir="/srv/tmp/extracts",
    )
    job = await orchestrator.submit("/srv/uploads/a.zip", declared_size=1234)
    await orchestrator.run(job)
    print(job.status, job.failure_reason)
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Awaitable, Optional, Protocol, Sequence, TypeVar, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter, Histogram

from archguard.core.archive_extractor import (
    ExtractedFile,
    ExtractionLimits,
    extract,
    remove_session,
    session_dir,
)
from archguard.core.detection_engine import Detection, DetectionEngine, DetectionReport
from archguard.core.errors import (
    ArchGuardError,
    CancelledJobError,
    EngineUnavailableError,
    FailureReason,
    FileTooLargeError,
    InternalError,
    InvalidUploadError,
    MalwareDetectedError,
)
from archguard.core.job import STAGE_PROGRESS, IngestionJob, JobStatus
from archguard.core.job_queue import JobQueue, JobTicket
from archguard.core.progress import ProgressChannel
from archguard.core.scan_gateway import ScanGateway, ScanVerdict

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(
    "archguard.orchestrator",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

T = TypeVar("T")

jobs_total = Counter(
    "archguard_jobs_total",
    "Ingestion jobs finished, by terminal status and failure reason",
    ["status", "reason"],
)
job_duration_seconds = Histogram(
    "archguard_job_duration_seconds",
    "Wall-clock time from dequeue to terminal status",
)


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class RiskScorer(Protocol):
    """External semantic classifier used to enrich detections."""

    async def rescore(self, job_id: str, detections: Sequence[Detection]) -> list[Detection]:
        """Return *detections* with AI confidence and recommendations filled in."""
        ...


@runtime_checkable
class DetectionSink(Protocol):
    """Receives completed jobs for persistence."""

    async def store(self, job: IngestionJob) -> None:
        ...


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Drives jobs through the ingestion state machine.

    Args:
        gateway: Antivirus gateway.
        engine: Detection engine bound to the process pattern registry.
        queue: Intake queue :meth:`submit` enqueues onto.
        progress: Channel receiving one event per status change.
        work_dir: Parent of per-job extraction roots.
        limits: Archive extraction limits.
        max_scan_size: Largest archive (bytes) accepted for scanning.
        scan_timeout: Scanner deadline in seconds.
        risk_scorer: Optional AI re-scoring collaborator.
        risk_scorer_timeout: Deadline for re-scoring; completion never waits
            longer than this.
        sink: Optional persistence hand-off for completed jobs.
        max_retained_jobs: Terminal jobs kept in memory; the oldest are evicted
            first once the count is exceeded.
    """

    def __init__(
        self,
        *,
        gateway: ScanGateway,
        engine: DetectionEngine,
        queue: JobQueue,
        progress: ProgressChannel,
        work_dir: str | os.PathLike[str],
        limits: ExtractionLimits = ExtractionLimits(),
        max_scan_size: int = 100 * 1024 * 1024,
        scan_timeout: float = 30.0,
        risk_scorer: Optional[RiskScorer] = None,
        risk_scorer_timeout: float = 10.0,
        sink: Optional[DetectionSink] = None,
        max_retained_jobs: int = 1000,
    ) -> None:
        self.gateway = gateway
        self.engine = engine
        self.queue = queue
        self.progress = progress
        self._work_dir = Path(work_dir)
        self._limits = limits
        self._max_scan_size = max_scan_size
        self._scan_timeout = scan_timeout
        self._risk_scorer = risk_scorer
        self._risk_scorer_timeout = risk_scorer_timeout
        self._sink = sink
        if max_retained_jobs < 1:
            raise ValueError("max_retained_jobs must be at least 1")
        self._max_retained_jobs = max_retained_jobs
        self._jobs: dict[str, IngestionJob] = {}

    # ------------------------------------------------------------------
    # Job registry
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[IngestionJob]:
        return self._jobs.get(job_id)

    def jobs(self) -> list[IngestionJob]:
        return list(self._jobs.values())

    def forget(self, job_id: str) -> None:
        """Drop a terminal job once an external store has taken it over."""
        job = self._jobs.get(job_id)
        if job is not None and job.status.is_terminal:
            del self._jobs[job_id]

    def _evict_terminal(self) -> None:
        """Drop the oldest terminal jobs beyond the retention limit."""
        terminal = [job_id for job_id, job in self._jobs.items() if job.status.is_terminal]
        excess = len(terminal) - self._max_retained_jobs
        for job_id in terminal[:max(excess, 0)]:
            del self._jobs[job_id]
        if excess > 0:
            logger.debug("Evicted terminal jobs count=%d", excess)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; honoured at the next transition boundary."""
        job = self._jobs.get(job_id)
        if job is None or not job.request_cancel():
            return False
        logger.info("Cancellation requested job_id=%s status=%s", job_id, job.status.value)
        return True

    def job_for_ticket(self, ticket: JobTicket) -> IngestionJob:
        """Return the job a dequeued ticket refers to, rebuilding it if needed.

        A ticket recovered from a durable queue after a restart has no
        in-memory job; a fresh ``queued`` job is created under the same id.
        """
        job = self._jobs.get(ticket.job_id)
        if job is None:
            job = IngestionJob(
                id=ticket.job_id,
                source_archive_path=ticket.archive_path,
                declared_size=ticket.declared_size,
            )
            self._jobs[job.id] = job
        return job

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def submit(self, archive_path: str | os.PathLike[str], declared_size: int) -> IngestionJob:
        """Accept an uploaded archive and enqueue it.

        Raises:
            EngineUnavailableError: The antivirus engine failed its liveness
                probe; no job is created.
            InvalidUploadError: *declared_size* is negative.
        """
        if declared_size < 0:
            raise InvalidUploadError(f"Negative declared size: {declared_size}")
        if not await self.gateway.is_available():
            jobs_total.labels(status="rejected", reason=FailureReason.ENGINE_UNAVAILABLE.value).inc()
            raise EngineUnavailableError("Antivirus engine failed its liveness probe")

        job = IngestionJob(source_archive_path=str(archive_path), declared_size=declared_size)
        self._jobs[job.id] = job
        await self.queue.enqueue(
            JobTicket(job_id=job.id, archive_path=job.source_archive_path, declared_size=declared_size)
        )
        self._publish(job, "job accepted")
        logger.info("Job accepted job_id=%s archive=%s declared_size=%d", job.id, archive_path, declared_size)
        return job

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, job: IngestionJob) -> IngestionJob:
        """Process *job* to a terminal status.

        Returns the same job.  Job-level failures are recorded on the job,
        not raised; only task cancellation propagates (after the job has been
        marked ``failed``).
        """
        if job.status.is_terminal:
            logger.info("Skipping terminal job job_id=%s status=%s", job.id, job.status.value)
            return job

        start = time.monotonic()
        extraction_root = session_dir(self._work_dir, job.id)

        with tracer.start_as_current_span("archguard.ingest", kind=trace.SpanKind.INTERNAL) as root_span:
            root_span.set_attribute("job.id", job.id)
            root_span.set_attribute("job.declared_size", job.declared_size)
            try:
                await self._stage(job, "validate", self._validate_upload(job))

                self._transition(job, JobStatus.SCANNING, "scanning archive")
                verdict = await self._stage(job, "scan", self._scan(job))
                job.scan_verdict = verdict
                if verdict.is_infected:
                    raise MalwareDetectedError(
                        f"Malware detected: {', '.join(verdict.threat_names) or 'unknown'}",
                        threat_names=verdict.threat_names,
                    )

                self._transition(job, JobStatus.EXTRACTING, "extracting archive")
                files = await self._stage(job, "extract", self._extract(job, extraction_root))

                self._transition(job, JobStatus.DETECTING, f"analysing {len(files)} file(s)")
                report = await self._stage(job, "detect", self._detect(files))
                detections = await self._rescore(job, report.detections)
                job.detections = tuple(detections)
                job.skipped_binary = report.skipped_binary
                job.files_scanned = report.files_scanned

                self._transition(job, JobStatus.COMPLETED, f"{len(job.detections)} detection(s)")
                root_span.set_attribute("job.detections", len(job.detections))
            except ArchGuardError as exc:
                self._fail(job, exc)
                root_span.set_status(Status(StatusCode.ERROR, exc.reason.value))
                root_span.set_attribute("job.failure_reason", exc.reason.value)
            except asyncio.CancelledError:
                if not job.status.is_terminal:
                    self._fail(job, CancelledJobError("worker shutting down"))
                raise
            finally:
                remove_session(extraction_root)
                elapsed = time.monotonic() - start
                job_duration_seconds.observe(elapsed)
                root_span.set_attribute("job.status", job.status.value)

        if job.status is JobStatus.COMPLETED:
            jobs_total.labels(status="completed", reason="").inc()
            await self._hand_off(job)
            logger.info(
                "Job completed job_id=%s detections=%d skipped_binary=%d duration_ms=%d",
                job.id,
                len(job.detections),
                len(job.skipped_binary),
                int(elapsed * 1000),
            )
        self._evict_terminal()
        return job

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    async def _stage(self, job: IngestionJob, name: str, work: Awaitable[T]) -> T:
        """Await *work* inside an ``archguard.<name>`` span.

        Domain errors propagate unchanged; anything else is wrapped in
        :class:`InternalError` carrying the stage name.
        """
        with tracer.start_as_current_span(f"archguard.{name}") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("stage.name", name)
            stage_start = time.monotonic()
            try:
                result = await work
            except ArchGuardError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, exc.reason.value))
                raise
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.exception("Unexpected error job_id=%s stage=%s", job.id, name)
                raise InternalError(name, exc) from exc
            finally:
                span.set_attribute("stage.duration_ms", int((time.monotonic() - stage_start) * 1000))
            return result

    def _transition(self, job: IngestionJob, target: JobStatus, message: str) -> None:
        if job.cancel_requested:
            raise CancelledJobError(f"Cancelled before {target.value}")
        job.advance(target)
        self._publish(job, message)

    def _fail(self, job: IngestionJob, exc: ArchGuardError) -> None:
        job.fail(exc.reason, str(exc))
        jobs_total.labels(status="failed", reason=exc.reason.value).inc()
        self._publish(job, exc.user_message)
        log = logger.warning if exc.reason is FailureReason.CANCELLED else logger.error
        log(
            "Job failed job_id=%s stage=%s reason=%s detail=%s",
            job.id,
            job.failure_stage,
            exc.reason.value,
            exc,
        )

    def _publish(self, job: IngestionJob, message: str) -> None:
        job.progress = STAGE_PROGRESS[job.status]
        self.progress.publish(job.id, job.status.value, job.progress, message)

    async def _validate_upload(self, job: IngestionJob) -> None:
        path = Path(job.source_archive_path)
        if not path.is_file():
            raise InvalidUploadError(f"Archive not found: {path}")
        actual = path.stat().st_size
        if actual != job.declared_size:
            raise InvalidUploadError(
                f"Archive size {actual} does not match declared size {job.declared_size}"
            )
        if actual > self._max_scan_size:
            raise FileTooLargeError(f"Archive too large: {actual} bytes (limit {self._max_scan_size})")

    async def _scan(self, job: IngestionJob) -> ScanVerdict:
        return await self.gateway.scan(job.source_archive_path, self._max_scan_size, self._scan_timeout)

    async def _extract(self, job: IngestionJob, root: Path) -> list[ExtractedFile]:
        work = asyncio.ensure_future(asyncio.to_thread(extract, job.source_archive_path, root, self._limits))
        try:
            return await asyncio.shield(work)
        except asyncio.CancelledError:
            # The extraction thread cannot be interrupted; it must stop writing
            # before the session directory is removed.
            await asyncio.wait([work])
            if not work.cancelled():
                work.exception()
            raise

    async def _detect(self, files: list[ExtractedFile]) -> DetectionReport:
        return await asyncio.to_thread(self.engine.analyse, files)

    async def _rescore(self, job: IngestionJob, detections: Sequence[Detection]) -> Sequence[Detection]:
        """Best-effort enrichment; the unscored detections are kept on any failure."""
        if self._risk_scorer is None or not detections:
            return detections
        try:
            return await asyncio.wait_for(
                self._risk_scorer.rescore(job.id, detections),
                timeout=self._risk_scorer_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Risk re-scoring timed out job_id=%s timeout=%.1fs", job.id, self._risk_scorer_timeout
            )
        except Exception as exc:
            logger.warning("Risk re-scoring failed job_id=%s error=%r", job.id, exc)
        return detections

    async def _hand_off(self, job: IngestionJob) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.store(job)
        except Exception:
            logger.exception("Detection sink failed job_id=%s", job.id)


