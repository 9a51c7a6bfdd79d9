"""Abstract antivirus scan gateway and verdict type.

Defines the contract every antivirus integration fulfils.  The orchestrator
depends only on :class:`ScanGateway`; concrete implementations are
:class:`~archguard.core.clamdscan.ClamdscanGateway` (one ``clamdscan``
subprocess per file, the default) and
:class:`~archguard.core.adapters.clamd_socket.ClamdSocketGateway` (talks to
the clamd control socket directly).

**Fail-secure**: implementations never report a file as
clean when the engine did not actually inspect it.  Size violations, path
violations, spawn failures, timeouts and engine errors all raise the
corresponding :mod:`archguard.core.errors` exception.
"""

from __future__ import annotations

import abc
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from prometheus_client import Counter, Histogram

from archguard.core.errors import FileTooLargeError, PathRejectedError

#: Shared by every gateway implementation, labelled by outcome (clean,
#: infected or a failure reason).
scans_total = Counter(
    "archguard_scans_total",
    "Antivirus scans by outcome",
    ["outcome"],
)
scan_duration_seconds = Histogram(
    "archguard_scan_duration_seconds",
    "Wall-clock duration of antivirus scans",
)


@dataclass(frozen=True)
class ScanVerdict:
    """Result of antivirus inspection of one file.

    Attributes:
        is_infected: ``True`` when the engine reported at least one threat.
        threat_names: Threat identifiers in engine output order
            (e.g. ``"Win.Test.EICAR_HDB-1"``).  Always empty when the file is
            clean.
        scanned_path: Absolute path that was scanned.
        elapsed_ms: Wall-clock duration of the engine call.
        engine: Identifier of the engine that produced the verdict.

    Raises:
        ValueError: On construction when *is_infected* is ``False`` but
            *threat_names* is non-empty.
    """

    is_infected: bool
    threat_names: tuple[str, ...] = field(default_factory=tuple)
    scanned_path: str = ""
    elapsed_ms: int = 0
    engine: str = ""

    def __post_init__(self) -> None:
        if not self.is_infected and self.threat_names:
            raise ValueError("ScanVerdict cannot be clean while threat names are present.")


class ScanGateway(abc.ABC):
    """Abstract interface for antivirus engines.

    Args:
        allowed_roots: Directories a scanned path must resolve into.  An
            empty iterable disables the check.
    """

    ENGINE_NAME: str = "unknown"

    def __init__(self, allowed_roots: Iterable[str | os.PathLike[str]] = ()) -> None:
        self._allowed_roots = tuple(Path(r).resolve() for r in allowed_roots)

    @abc.abstractmethod
    async def scan(self, file_path: str | os.PathLike[str], max_size: int, timeout: float) -> ScanVerdict:
        """Scan *file_path* and return a verdict.

        Raises:
            FileTooLargeError: The file exceeds *max_size*; the engine is
                never invoked.
            PathRejectedError: The path escapes the allowed scan roots.
            EngineUnavailableError: The engine cannot be started or reached.
            ScanTimeoutError: The engine did not finish within *timeout*
                seconds.
            EngineError: The engine reported an error.
        """

    @abc.abstractmethod
    async def is_available(self) -> bool:
        """Lightweight liveness probe.  Never raises."""

    # ------------------------------------------------------------------
    # Shared pre-flight checks
    # ------------------------------------------------------------------

    def _resolve_allowed(self, file_path: str | os.PathLike[str]) -> Path:
        """Resolve *file_path* and ensure it sits under an allowed root."""
        resolved = Path(file_path).resolve()
        if self._allowed_roots and not any(
            resolved == root or resolved.is_relative_to(root) for root in self._allowed_roots
        ):
            raise PathRejectedError(f"Path outside allowed scan roots: {file_path}")
        return resolved

    @staticmethod
    def _check_size(path: Path, max_size: int) -> int:
        size = path.stat().st_size
        if size > max_size:
            raise FileTooLargeError(f"File too large: {size} bytes (limit {max_size})")
        return size
