"""Periodic maintenance tasks.

:func:`cleanup_sessions_task` removes extraction roots under
``settings.work_dir`` older than ``settings.session_max_age_hours``.  The
orchestrator deletes each job's root when the job finishes; this sweep only
catches roots orphaned by a killed worker.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from archguard.celery_app import celery_app
from archguard.config import get_settings
from archguard.core.archive_extractor import cleanup_stale_sessions

logger = logging.getLogger(__name__)


@celery_app.task(name="archguard.workers.maintenance.cleanup_sessions_task")
def cleanup_sessions_task(max_age_hours: Optional[float] = None) -> dict[str, Any]:
    """Delete stale extraction sessions.

    Args:
        max_age_hours: Override of ``settings.session_max_age_hours``.

    Returns:
        ``{"work_dir": str, "removed": int}``.
    """
    settings = get_settings()
    age = max_age_hours if max_age_hours is not None else settings.session_max_age_hours
    removed = cleanup_stale_sessions(settings.work_dir, age)
    logger.info("Session cleanup complete work_dir=%s max_age_hours=%s removed=%d", settings.work_dir, age, removed)
    return {"work_dir": str(settings.work_dir), "removed": removed}
