"""FastAPI dependencies shared by the ArchGuard routes."""

from __future__ import annotations

from fastapi import HTTPException
from starlette.requests import HTTPConnection

from archguard.core.job import IngestionJob
from archguard.runtime import Runtime


def get_runtime(conn: HTTPConnection) -> Runtime:
    """Return the runtime attached to ``app.state`` at start-up."""
    runtime = getattr(conn.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return runtime


def require_job(runtime: Runtime, job_id: str) -> IngestionJob:
    job = runtime.orchestrator.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"job {job_id} not found")
    return job
