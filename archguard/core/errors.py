"""Exception taxonomy for the ArchGuard ingestion pipeline.

Every stage-local failure raised by the scan gateway, the archive extractor
or the detection engine derives from :class:`ArchGuardError`.  Each subclass
carries two class-level attributes consumed by the orchestrator when it moves
a job to ``failed``:

* ``reason`` — stable machine-readable failure category stored as
  ``IngestionJob.failure_reason``.
* ``user_message`` — human-readable category shown to the uploading client.
  It never contains paths, engine diagnostics or stack traces; those stay in
  the exception message and the logs.

**Fail-secure contract**: none of these errors may be swallowed in a way that
lets an archive continue through the pipeline.  The orchestrator translates
them into a terminal ``failed`` state.
"""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    """Failure categories recorded on a failed job."""

    INFECTED = "infected"
    FILE_TOO_LARGE = "file_too_large"
    PATH_REJECTED = "path_rejected"
    PATH_TRAVERSAL = "path_traversal"
    ENGINE_UNAVAILABLE = "engine_unavailable"
    SCAN_TIMEOUT = "scan_timeout"
    ENGINE_ERROR = "engine_error"
    ZIP_BOMB = "zip_bomb"
    CORRUPT_ARCHIVE = "corrupt_archive"
    INVALID_UPLOAD = "invalid_upload"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


#: Client-facing text per failure category.
USER_MESSAGES: dict[FailureReason, str] = {
    FailureReason.INFECTED: "file rejected: malware detected",
    FailureReason.FILE_TOO_LARGE: "file rejected: exceeds maximum scan size",
    FailureReason.PATH_REJECTED: "file rejected: location not allowed",
    FailureReason.PATH_TRAVERSAL: "archive rejected: unsafe entry paths",
    FailureReason.ENGINE_UNAVAILABLE: "scan unavailable: antivirus engine unreachable, please resubmit later",
    FailureReason.SCAN_TIMEOUT: "scan failed: antivirus engine timed out, please resubmit later",
    FailureReason.ENGINE_ERROR: "scan failed: antivirus engine error",
    FailureReason.ZIP_BOMB: "archive rejected: exceeds safe extraction limits",
    FailureReason.CORRUPT_ARCHIVE: "archive rejected: not a valid ZIP file",
    FailureReason.INVALID_UPLOAD: "upload rejected: file missing or size mismatch",
    FailureReason.CANCELLED: "job cancelled",
    FailureReason.INTERNAL_ERROR: "processing failed: internal error",
}


class ArchGuardError(Exception):
    """Base class for all pipeline errors that map to a failure category."""

    reason: FailureReason = FailureReason.INTERNAL_ERROR

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.reason]


# ---------------------------------------------------------------------------
# Upload / scan gateway
# ---------------------------------------------------------------------------


class InvalidUploadError(ArchGuardError):
    """The uploaded archive is missing or does not match its declared size."""

    reason = FailureReason.INVALID_UPLOAD


class FileTooLargeError(ArchGuardError):
    """The file exceeds the configured scan size; the engine was not invoked."""

    reason = FailureReason.FILE_TOO_LARGE


class PathRejectedError(ArchGuardError):
    """The path to scan resolves outside every allowed scan root."""

    reason = FailureReason.PATH_REJECTED


class EngineUnavailableError(ArchGuardError):
    """The antivirus engine could not be started or reached."""

    reason = FailureReason.ENGINE_UNAVAILABLE


class ScanTimeoutError(ArchGuardError):
    """The antivirus engine did not finish within the deadline and was killed."""

    reason = FailureReason.SCAN_TIMEOUT


class MalwareDetectedError(ArchGuardError):
    """The antivirus verdict for the archive was positive.

    Attributes:
        threat_names: Threats reported by the engine.
    """

    reason = FailureReason.INFECTED

    def __init__(self, message: str, *, threat_names: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.threat_names = threat_names


class EngineError(ArchGuardError):
    """The antivirus engine exited with an error status.

    Attributes:
        exit_code: Process exit status, or ``None`` for socket engines.
        stderr: Captured diagnostic output.  Logged, never shown to clients.
    """

    reason = FailureReason.ENGINE_ERROR

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Archive extraction
# ---------------------------------------------------------------------------


class ZipBombError(ArchGuardError):
    """An entry or the archive as a whole exceeded a decompression limit.

    Attributes:
        entry: Name of the archive entry being processed, if any.
        limit: Name of the limit that tripped (``"ratio"``, ``"entry_size"``,
            ``"total_size"`` or ``"entry_count"``).
    """

    reason = FailureReason.ZIP_BOMB

    def __init__(self, message: str, *, entry: str | None = None, limit: str = "") -> None:
        super().__init__(message)
        self.entry = entry
        self.limit = limit


class PathTraversalError(ArchGuardError):
    """An entry name would resolve outside the extraction root."""

    reason = FailureReason.PATH_TRAVERSAL

    def __init__(self, message: str, *, entry: str | None = None) -> None:
        super().__init__(message)
        self.entry = entry


class CorruptArchiveError(ArchGuardError):
    """The archive cannot be parsed or an entry cannot be decompressed."""

    reason = FailureReason.CORRUPT_ARCHIVE


# ---------------------------------------------------------------------------
# Generic
# ---------------------------------------------------------------------------


class InternalError(ArchGuardError):
    """Unexpected failure inside a stage.

    Attributes:
        stage: Name of the pipeline stage that raised.
        original: The underlying exception.
    """

    reason = FailureReason.INTERNAL_ERROR

    def __init__(self, stage: str, original: BaseException) -> None:
        super().__init__(f"Stage '{stage}' failed: {type(original).__name__}: {original}")
        self.stage = stage
        self.original = original


class CancelledJobError(ArchGuardError):
    """Raised at a transition boundary when cancellation was requested."""

    reason = FailureReason.CANCELLED
