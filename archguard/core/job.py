"""IngestionJob — the state carried by one archive submission.

The orchestrator is the only writer.  Status moves strictly forward through
:data:`PIPELINE_ORDER`; ``failed`` is reachable from any non-terminal state
and, like ``completed``, is terminal.  Any other move raises
:class:`InvalidTransitionError`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from archguard.core.detection_engine import Detection
from archguard.core.errors import USER_MESSAGES, FailureReason
from archguard.core.scan_gateway import ScanVerdict


class JobStatus(str, Enum):
    QUEUED = "queued"
    SCANNING = "scanning"
    EXTRACTING = "extracting"
    DETECTING = "detecting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


PIPELINE_ORDER: tuple[JobStatus, ...] = (
    JobStatus.QUEUED,
    JobStatus.SCANNING,
    JobStatus.EXTRACTING,
    JobStatus.DETECTING,
    JobStatus.COMPLETED,
)

#: Progress percentage published when a job enters each status.
STAGE_PROGRESS: dict[JobStatus, int] = {
    JobStatus.QUEUED: 0,
    JobStatus.SCANNING: 10,
    JobStatus.EXTRACTING: 35,
    JobStatus.DETECTING: 60,
    JobStatus.COMPLETED: 100,
    JobStatus.FAILED: 100,
}


class InvalidTransitionError(Exception):
    """Raised for a status change the state machine does not allow."""

    def __init__(self, current: JobStatus, target: JobStatus) -> None:
        super().__init__(f"Invalid job transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IngestionJob:
    """One archive submission.

    Attributes:
        source_archive_path: Local path of the uploaded archive.
        declared_size: Size in bytes reported by the upload front-end.
        id: Opaque unique identifier (UUID4 string).
        status: Current pipeline status.
        created_at: Acceptance timestamp (UTC).
        completed_at: Set when the job reaches a terminal status.
        failure_reason: Failure category for ``failed`` jobs.
        failure_stage: Status the job was in when it failed.
        failure_message: Internal diagnostic; never shown to clients.
        progress: Last published percentage.
        scan_verdict: Antivirus verdict once scanning finished.
        detections: Ordered detections once detection finished.
        skipped_binary: Files the detection stage could not decode.
        files_scanned: Files the detection stage decoded.
        cancel_requested: Set by :meth:`request_cancel`; honoured at the next
            transition boundary.
    """

    source_archive_path: str
    declared_size: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    failure_reason: Optional[FailureReason] = None
    failure_stage: Optional[str] = None
    failure_message: Optional[str] = None
    progress: int = 0
    scan_verdict: Optional[ScanVerdict] = None
    detections: tuple[Detection, ...] = ()
    skipped_binary: tuple[str, ...] = ()
    files_scanned: int = 0
    cancel_requested: bool = False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def advance(self, target: JobStatus) -> None:
        """Move to the next pipeline status.

        Raises:
            InvalidTransitionError: If *target* is not the status directly
                after the current one.
        """
        if target is JobStatus.FAILED or self.status.is_terminal:
            raise InvalidTransitionError(self.status, target)
        position = PIPELINE_ORDER.index(self.status)
        if PIPELINE_ORDER[position + 1] is not target:
            raise InvalidTransitionError(self.status, target)
        self.status = target
        self.progress = STAGE_PROGRESS[target]
        if target is JobStatus.COMPLETED:
            self.completed_at = _utcnow()

    def fail(self, reason: FailureReason, message: str = "") -> None:
        """Move to ``failed``, recording the stage that was running.

        Raises:
            InvalidTransitionError: If the job is already terminal.
        """
        if self.status.is_terminal:
            raise InvalidTransitionError(self.status, JobStatus.FAILED)
        self.failure_stage = self.status.value
        self.failure_reason = reason
        self.failure_message = message or None
        self.status = JobStatus.FAILED
        self.completed_at = _utcnow()

    def request_cancel(self) -> bool:
        """Flag the job for cancellation; returns ``False`` when already terminal."""
        if self.status.is_terminal:
            return False
        self.cancel_requested = True
        return True

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def user_message(self) -> Optional[str]:
        if self.failure_reason is None:
            return None
        return USER_MESSAGES[self.failure_reason]

    def summary(self) -> dict[str, Any]:
        """Client-facing representation; excludes internal diagnostics."""
        verdict = self.scan_verdict
        return {
            "id": self.id,
            "source_archive_path": self.source_archive_path,
            "declared_size": self.declared_size,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "failure_stage": self.failure_stage,
            "message": self.user_message,
            "threat_names": list(verdict.threat_names) if verdict else [],
            "detection_count": len(self.detections),
            "files_scanned": self.files_scanned,
            "skipped_binary": list(self.skipped_binary),
            "cancel_requested": self.cancel_requested,
        }
