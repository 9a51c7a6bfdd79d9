"""Pydantic schemas for the ingestion job API.

Usage::

    from archguard.schemas.jobs import JobCreate, JobOut

    body = JobCreate(archive_path="/srv/uploads/a.zip", declared_size=1234)
    out = JobOut.from_job(job)
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from archguard.core.detection_engine import UNIDENTIFIED_TITULAR, Detection
from archguard.core.job import IngestionJob
from archguard.core.risk import RiskSummary

JobStatusLiteral = Literal["queued", "scanning", "extracting", "detecting", "completed", "failed"]
RiskLiteral = Literal["low", "medium", "high", "critical"]


class JobCreate(BaseModel):
    """Submission of an archive already written by the upload front-end."""

    archive_path: str = Field(min_length=1, description="Local path of the uploaded archive")
    declared_size: int = Field(ge=0, description="Archive size in bytes reported at upload")


class JobOut(BaseModel):
    """Client-facing job state.  ``message`` is a failure category, never a trace."""

    id: str
    source_archive_path: str
    declared_size: int
    status: JobStatusLiteral
    progress: int = Field(ge=0, le=100)
    created_at: datetime
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failure_stage: Optional[str] = None
    message: Optional[str] = None
    threat_names: list[str] = Field(default_factory=list)
    detection_count: int = 0
    files_scanned: int = 0
    skipped_binary: list[str] = Field(default_factory=list)
    cancel_requested: bool = False

    @classmethod
    def from_job(cls, job: IngestionJob) -> "JobOut":
        return cls.model_validate(job.summary())


class DetectionOut(BaseModel):
    pattern_name: str
    category: str
    matched_value: str
    source_file: str
    offset: int
    validated: bool
    risk_level: RiskLiteral
    sensitivity_score: int = Field(ge=0, le=10)
    context: str = ""
    escalations: list[str] = Field(default_factory=list)
    ai_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    recommendations: list[str] = Field(default_factory=list)
    titular: str = UNIDENTIFIED_TITULAR

    @classmethod
    def from_detection(cls, detection: Detection) -> "DetectionOut":
        return cls.model_validate(detection.to_dict())


class RiskSummaryOut(BaseModel):
    overall: RiskLiteral
    counts: dict[str, int]

    @classmethod
    def from_summary(cls, summary: RiskSummary) -> "RiskSummaryOut":
        return cls(
            overall=summary.overall.value,
            counts={level.value: count for level, count in summary.counts.items()},
        )


class DetectionListOut(BaseModel):
    job_id: str
    risk: RiskSummaryOut
    detections: list[DetectionOut]
    skipped_binary: list[str] = Field(default_factory=list)
    files_scanned: int = 0


class CancelOut(BaseModel):
    id: str
    cancel_requested: bool
    status: JobStatusLiteral
