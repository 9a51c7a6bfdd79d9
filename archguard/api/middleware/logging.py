"""Per-request JSON access log for the ArchGuard API.

Every HTTP request produces exactly one log record from this module, whose
message is a JSON object::

    {"event": "http_request", "correlation_id": "…", "job_id": "1f0c…",
     "method": "GET", "path": "/v1/jobs/1f0c…/detections",
     "status_code": 200, "duration_ms": 3.1}

``correlation_id`` comes from ``X-Correlation-ID`` or ``X-Request-ID`` when
the caller sends one and is a fresh UUID v4 otherwise.  It is exposed to
handlers as ``request.state.correlation_id`` and returned to the caller in
the ``X-Correlation-ID`` header.

``job_id`` is filled for paths under ``/v1/jobs/{id}`` so access records can
be joined with the orchestrator's ``job_id=`` log lines, and is ``null``
elsewhere.  Server errors are logged at ``ERROR``, client errors at
``WARNING``, everything else at ``INFO``.  A handler exception is logged with
status 500 and re-raised.

WebSocket connections bypass ``BaseHTTPMiddleware`` and are not logged here.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
_INCOMING_HEADERS = (CORRELATION_HEADER.lower(), "x-request-id")
_JOBS_PREFIX = "/v1/jobs/"


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one JSON access record per request and propagate the correlation id."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = next(
            (v for v in (request.headers.get(h, "").strip() for h in _INCOMING_HEADERS) if v),
            None,
        ) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        path = request.url.path

        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            record = {
                "event": "http_request",
                "correlation_id": correlation_id,
                "job_id": self._job_id(path),
                "method": request.method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
            }
            logger.log(_level_for(status_code), json.dumps(record))

        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @staticmethod
    def _job_id(path: str) -> Optional[str]:
        """Return the ``{id}`` segment of ``/v1/jobs/{id}...`` paths."""
        if not path.startswith(_JOBS_PREFIX):
            return None
        segment = path[len(_JOBS_PREFIX):].partition("/")[0]
        return segment or None
