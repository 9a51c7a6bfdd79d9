"""API routes for archive ingestion jobs.

Endpoints
---------
POST   /v1/jobs
    Accept an archive the upload front-end has already written to disk.
    Returns ``202 Accepted`` with the queued job, or ``503`` when the
    antivirus engine fails its liveness probe (nothing is queued).

GET    /v1/jobs
    List the jobs known to this process.

GET    /v1/jobs/{job_id}
    Current status, progress and failure category of one job.

GET    /v1/jobs/{job_id}/detections
    Ordered detections and risk summary of a completed job (``409`` while
    the job is still running or when it failed).

DELETE /v1/jobs/{job_id}
    Request cancellation.  The job stops at its next stage boundary; a scan
    in progress is allowed to finish.

WS     /v1/jobs/{job_id}/progress
    Streams ``{"job_id", "stage", "percentage", "message", "timestamp"}``
    events until the job reaches ``completed`` or ``failed``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from archguard.api.dependencies import get_runtime, require_job
from archguard.core.errors import EngineUnavailableError, InvalidUploadError
from archguard.core.job import JobStatus
from archguard.core.progress import ProgressEvent
from archguard.core.risk import summarise
from archguard.runtime import Runtime
from archguard.schemas.jobs import (
    CancelOut,
    DetectionListOut,
    DetectionOut,
    JobCreate,
    JobOut,
    RiskSummaryOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/jobs", tags=["jobs"])

#: WebSocket close code sent when the job id is unknown.
WS_CLOSE_NOT_FOUND = 4404


@router.post("", response_model=JobOut, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(body: JobCreate, runtime: Runtime = Depends(get_runtime)) -> JobOut:
    try:
        job = await runtime.orchestrator.submit(body.archive_path, body.declared_size)
    except EngineUnavailableError as exc:
        raise HTTPException(status_code=503, detail=exc.user_message)
    except InvalidUploadError as exc:
        raise HTTPException(status_code=422, detail=exc.user_message)
    return JobOut.from_job(job)


@router.get("", response_model=list[JobOut])
async def list_jobs(runtime: Runtime = Depends(get_runtime)) -> list[JobOut]:
    jobs = sorted(runtime.orchestrator.jobs(), key=lambda j: j.created_at, reverse=True)
    return [JobOut.from_job(j) for j in jobs]


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)) -> JobOut:
    return JobOut.from_job(require_job(runtime, job_id))


@router.get("/{job_id}/detections", response_model=DetectionListOut)
async def get_detections(job_id: str, runtime: Runtime = Depends(get_runtime)) -> DetectionListOut:
    job = require_job(runtime, job_id)
    if job.status is not JobStatus.COMPLETED:
        raise HTTPException(status_code=409, detail=f"job is {job.status.value}")
    return DetectionListOut(
        job_id=job.id,
        risk=RiskSummaryOut.from_summary(summarise(d.risk_level for d in job.detections)),
        detections=[DetectionOut.from_detection(d) for d in job.detections],
        skipped_binary=list(job.skipped_binary),
        files_scanned=job.files_scanned,
    )


@router.delete("/{job_id}", response_model=CancelOut, status_code=status.HTTP_202_ACCEPTED)
async def cancel_job(job_id: str, runtime: Runtime = Depends(get_runtime)) -> CancelOut:
    job = require_job(runtime, job_id)
    if not runtime.orchestrator.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"job is already {job.status.value}")
    return CancelOut(id=job.id, cancel_requested=True, status=job.status.value)


@router.websocket("/{job_id}/progress")
async def job_progress(websocket: WebSocket, job_id: str) -> None:
    runtime = get_runtime(websocket)
    job = runtime.orchestrator.get(job_id)
    if job is None:
        await websocket.close(code=WS_CLOSE_NOT_FOUND)
        return

    await websocket.accept()
    # Subscribe before reading the snapshot so no transition falls in between.
    async with runtime.progress.subscribe(job_id) as events:
        snapshot = ProgressEvent(
            job_id=job.id,
            stage=job.status.value,
            percentage=job.progress,
            message=job.user_message or "",
        )
        try:
            await websocket.send_json(snapshot.to_dict())
            if job.status.is_terminal:
                await websocket.close()
                return
            async for event in events:
                await websocket.send_json(event.to_dict())
                if event.stage in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
                    break
            await websocket.close()
        except WebSocketDisconnect:
            logger.debug("Progress client disconnected job_id=%s", job_id)
