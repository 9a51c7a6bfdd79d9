"""Persistence hand-off for completed jobs.

:class:`JsonFileDetectionSink` appends one JSON document per completed job
(job summary plus every detection) to a JSON Lines file.  It is the default
sink when ``detections_output_path`` is configured and a reference for
database-backed sinks, which only need an ``async store(job)`` method.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from archguard.core.job import IngestionJob

logger = logging.getLogger(__name__)


def job_record(job: IngestionJob) -> dict[str, Any]:
    record = job.summary()
    record["detections"] = [d.to_dict() for d in job.detections]
    return record


class JsonFileDetectionSink:
    """Append completed jobs to *path*, one JSON object per line."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def store(self, job: IngestionJob) -> None:
        line = json.dumps(job_record(job), ensure_ascii=False)
        async with self._lock:
            await asyncio.to_thread(self._append, line)
        logger.info("Job results stored job_id=%s path=%s detections=%d", job.id, self._path, len(job.detections))

    def _append(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def read_all(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        with self._path.open(encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]
