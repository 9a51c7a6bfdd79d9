"""ClamAV scan gateway backed by one ``clamdscan`` subprocess per file.

Each :meth:`ClamdscanGateway.scan` call spawns ``clamdscan`` (or the
configured command) with the file path as its last argument, waits for it
with a hard deadline and parses the exit status:

* ``0`` — clean.
* ``1`` — infected; threat names are parsed from ``<path>: <name> FOUND``
  lines on stdout.
* anything else — engine error, surfaced as
  :class:`~archguard.core.errors.EngineError` with the captured stderr.

**Process lifecycle**: the deadline is enforced on the child process itself.
When it passes, or when the awaiting task is cancelled, the child is sent
``SIGKILL`` and reaped before the call returns, so no scanner process outlives
its scan.  A semaphore bounds how many scanner processes one gateway runs at
the same time.

Usage::

    gateway = ClamdscanGateway(allowed_roots=["/srv/uploads"])
    verdict = await gateway.scan("/srv/uploads/a.zip", max_size=100 << 20, timeout=30)
    if verdict.is_infected:
        print(verdict.threat_names)
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from typing import Iterable, Sequence

from archguard.core.errors import (
    EngineError,
    EngineUnavailableError,
    FileTooLargeError,
    PathRejectedError,
    ScanTimeoutError,
)
from archguard.core.scan_gateway import ScanGateway, ScanVerdict, scan_duration_seconds, scans_total

logger = logging.getLogger(__name__)

#: Exit status meaning "no virus found".
EXIT_CLEAN = 0
#: Exit status meaning "virus(es) found".
EXIT_INFECTED = 1

_DEFAULT_ARGS: tuple[str, ...] = ("--no-summary", "--fdpass", "--stream")

#: Timeout for the ``--version`` liveness probe.
_PROBE_TIMEOUT_SECONDS = 5.0

# "<path>: <threat name> FOUND"; the path itself may contain ": ".
_FOUND_RE = re.compile(r"^(?P<path>.*):\s+(?P<threat>\S.*?)\s+FOUND\s*$")


def parse_threat_names(output: str) -> list[str]:
    """Return threat names from ``clamdscan`` stdout, in output order."""
    threats: list[str] = []
    for line in output.splitlines():
        match = _FOUND_RE.match(line.strip())
        if match:
            threats.append(match.group("threat"))
    return threats


class ClamdscanGateway(ScanGateway):
    """Subprocess-isolated ClamAV gateway.

    Args:
        command: Scanner executable.  Defaults to ``"clamdscan"``.
        args: Arguments placed before the file path.
        allowed_roots: Directories scanned paths must resolve into.
        max_concurrent: Maximum number of simultaneously running scanner
            processes started by this gateway.
    """

    ENGINE_NAME = "clamdscan"

    def __init__(
        self,
        command: str = "clamdscan",
        args: Sequence[str] = _DEFAULT_ARGS,
        allowed_roots: Iterable[str | os.PathLike[str]] = (),
        max_concurrent: int = 4,
    ) -> None:
        super().__init__(allowed_roots)
        self._command = command
        self._args = tuple(args)
        self._slots = asyncio.Semaphore(max_concurrent)

    async def scan(self, file_path: str | os.PathLike[str], max_size: int, timeout: float) -> ScanVerdict:
        try:
            path = self._resolve_allowed(file_path)
            self._check_size(path, max_size)
        except (FileTooLargeError, PathRejectedError) as exc:
            scans_total.labels(outcome=exc.reason.value).inc()
            logger.warning("Scan refused path=%s reason=%s", file_path, exc.reason.value)
            raise

        start = time.monotonic()
        async with self._slots:
            exit_code, stdout, stderr = await self._run(
                [self._command, *self._args, str(path)], timeout, str(path)
            )
        elapsed_ms = int((time.monotonic() - start) * 1000)
        scan_duration_seconds.observe(elapsed_ms / 1000)

        if exit_code == EXIT_CLEAN:
            scans_total.labels(outcome="clean").inc()
            logger.info("clamdscan complete path=%s status=clean duration_ms=%d", path, elapsed_ms)
            return ScanVerdict(
                is_infected=False,
                scanned_path=str(path),
                elapsed_ms=elapsed_ms,
                engine=self.ENGINE_NAME,
            )

        if exit_code == EXIT_INFECTED:
            threats = parse_threat_names(stdout)
            scans_total.labels(outcome="infected").inc()
            logger.warning(
                "clamdscan complete path=%s status=infected threats=%s duration_ms=%d",
                path,
                threats,
                elapsed_ms,
            )
            return ScanVerdict(
                is_infected=True,
                threat_names=tuple(threats),
                scanned_path=str(path),
                elapsed_ms=elapsed_ms,
                engine=self.ENGINE_NAME,
            )

        scans_total.labels(outcome="engine_error").inc()
        logger.error(
            "clamdscan error path=%s exit_code=%d stderr=%r duration_ms=%d",
            path,
            exit_code,
            stderr.strip(),
            elapsed_ms,
        )
        raise EngineError(
            f"clamdscan exited with code {exit_code}",
            exit_code=exit_code,
            stderr=stderr,
        )

    async def is_available(self) -> bool:
        """Return ``True`` when ``<command> --version`` exits 0 within 5 s."""
        try:
            exit_code, _, _ = await self._run(
                [self._command, "--version"], _PROBE_TIMEOUT_SECONDS, "--version"
            )
        except (EngineUnavailableError, ScanTimeoutError) as exc:
            logger.warning("Scanner liveness probe failed: %s", exc)
            return False
        return exit_code == EXIT_CLEAN

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    async def _run(self, argv: list[str], timeout: float, label: str) -> tuple[int, str, str]:
        """Run *argv*, returning ``(exit_code, stdout, stderr)``.

        The child is killed and reaped on timeout and on cancellation.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            scans_total.labels(outcome="engine_unavailable").inc()
            raise EngineUnavailableError(f"Failed to spawn {argv[0]}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            scans_total.labels(outcome="scan_timeout").inc()
            logger.error("Scanner timed out after %.1fs target=%s pid=%d", timeout, label, proc.pid)
            raise ScanTimeoutError(f"Scan timeout after {timeout}s: {label}") from None
        finally:
            if proc.returncode is None:
                await _kill(proc)

        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Send SIGKILL to *proc* (if still running) and wait for it to exit."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
