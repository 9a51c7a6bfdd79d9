"""ClamAV daemon gateway over the clamd control socket.

:class:`ClamdSocketGateway` is the alternative to the subprocess gateway for
deployments where ``clamd`` is reachable over a Unix domain socket or TCP but
the ``clamdscan`` binary is not installed next to the worker.  The file is
streamed to the daemon with the ``INSTREAM`` command from a worker thread.

The same pre-flight checks apply as for the subprocess gateway: the path must
sit under an allowed scan root and the file must not exceed ``max_size``
before any byte reaches the daemon.

**Fail-secure contract:** ``scan()`` never returns a clean verdict when the
daemon could not complete the scan.  Connection failures raise
:class:`~archguard.core.errors.EngineUnavailableError`; ``ERROR`` responses
and unrecognised replies raise :class:`~archguard.core.errors.EngineError`.

Usage::

    gateway = ClamdSocketGateway(socket_path="/var/run/clamav/clamd.ctl")
    verdict = await gateway.scan("/srv/uploads/a.zip", max_size=100 << 20, timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any, Iterable, Optional

import clamd

from archguard.core.errors import (
    EngineError,
    EngineUnavailableError,
    FileTooLargeError,
    PathRejectedError,
    ScanTimeoutError,
)
from archguard.core.scan_gateway import ScanGateway, ScanVerdict, scan_duration_seconds, scans_total

logger = logging.getLogger(__name__)

# clamd INSTREAM response status tokens.
_STATUS_OK = "OK"
_STATUS_FOUND = "FOUND"
_STATUS_ERROR = "ERROR"


class ClamdSocketGateway(ScanGateway):
    """ClamAV gateway that streams files to a running ``clamd``.

    Args:
        socket_path: Path to the ``clamd`` Unix domain socket.  When set,
            *host* and *port* are ignored.
        host: Hostname of the ``clamd`` TCP listener.
        port: TCP port of the ``clamd`` daemon.
        allowed_roots: Directories scanned paths must resolve into.
    """

    ENGINE_NAME = "clamd"

    def __init__(
        self,
        socket_path: Optional[str] = None,
        *,
        host: str = "localhost",
        port: int = 3310,
        allowed_roots: Iterable[str | os.PathLike[str]] = (),
    ) -> None:
        super().__init__(allowed_roots)
        self._socket_path = socket_path
        self._host = host
        self._port = port

    async def scan(self, file_path: str | os.PathLike[str], max_size: int, timeout: float) -> ScanVerdict:
        try:
            path = self._resolve_allowed(file_path)
            self._check_size(path, max_size)
        except (FileTooLargeError, PathRejectedError) as exc:
            scans_total.labels(outcome=exc.reason.value).inc()
            logger.warning("Scan refused path=%s reason=%s", file_path, exc.reason.value)
            raise

        start = time.monotonic()
        try:
            status, detail = await asyncio.wait_for(
                asyncio.to_thread(self._instream_sync, path, timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            scans_total.labels(outcome="scan_timeout").inc()
            raise ScanTimeoutError(f"clamd scan timeout after {timeout}s: {path}") from None
        except (EngineUnavailableError, EngineError) as exc:
            scans_total.labels(outcome=exc.reason.value).inc()
            raise
        elapsed_ms = int((time.monotonic() - start) * 1000)
        scan_duration_seconds.observe(elapsed_ms / 1000)

        if status == _STATUS_OK:
            scans_total.labels(outcome="clean").inc()
            logger.debug("clamd scan clean path=%s (%s)", path, self._connection_desc())
            return ScanVerdict(
                is_infected=False,
                scanned_path=str(path),
                elapsed_ms=elapsed_ms,
                engine=self.ENGINE_NAME,
            )

        if status == _STATUS_FOUND:
            scans_total.labels(outcome="infected").inc()
            logger.warning("clamd scan FOUND threat=%s path=%s", detail, path)
            return ScanVerdict(
                is_infected=True,
                threat_names=(detail or "unknown",),
                scanned_path=str(path),
                elapsed_ms=elapsed_ms,
                engine=self.ENGINE_NAME,
            )

        scans_total.labels(outcome="engine_error").inc()
        if status == _STATUS_ERROR:
            raise EngineError(f"clamd reported error: {detail}", stderr=detail or "")

        raise EngineError(f"Unrecognised clamd response status {status!r} (detail={detail!r})")

    async def is_available(self) -> bool:
        """Return ``True`` if the daemon answers ``PING``."""
        try:
            await asyncio.to_thread(self._ping_sync)
        except (clamd.ConnectionError, OSError) as exc:
            logger.warning("clamd liveness probe failed (%s): %s", self._connection_desc(), exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Synchronous helpers (run in worker threads)
    # ------------------------------------------------------------------

    def _get_client(self, timeout: float | None = None) -> Any:
        if self._socket_path is not None:
            return clamd.ClamdUnixSocket(self._socket_path, timeout=timeout)
        return clamd.ClamdNetworkSocket(self._host, self._port, timeout=timeout)

    def _instream_sync(self, path: Path, timeout: float) -> tuple[str, Optional[str]]:
        try:
            client = self._get_client(timeout)
            with path.open("rb") as fh:
                response: dict = client.instream(fh)
        except clamd.ConnectionError as exc:
            raise EngineUnavailableError(
                f"clamd unreachable ({self._connection_desc()}): {exc}"
            ) from exc
        except OSError as exc:
            raise EngineError(f"clamd INSTREAM failed ({self._connection_desc()}): {exc}") from exc

        stream_result = response.get("stream")
        if not stream_result or len(stream_result) < 2:
            raise EngineError(f"Unexpected clamd INSTREAM response: {response!r}")
        return stream_result[0], stream_result[1]

    def _ping_sync(self) -> None:
        self._get_client(5.0).ping()

    def _connection_desc(self) -> str:
        if self._socket_path is not None:
            return f"unix:{self._socket_path}"
        return f"tcp:{self._host}:{self._port}"
