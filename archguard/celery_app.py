"""Celery application for ArchGuard housekeeping tasks.

Ingestion jobs run on the in-process :class:`~archguard.workers.pool.WorkerPool`;
Celery only carries periodic maintenance, currently the removal of stale
extraction sessions left behind by crashed workers.

The broker and result backend are both Redis (``settings.redis_url``).

Starting a worker::

    celery -A archguard.celery_app worker --loglevel=info -Q archguard

Starting the beat scheduler::

    celery -A archguard.celery_app beat --loglevel=info
"""

from celery import Celery

from archguard.config import get_settings

settings = get_settings()

#: Shared Celery application instance.  Import this in task modules.
celery_app = Celery(
    "archguard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["archguard.workers.maintenance"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="archguard",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=86400,
)

# ---------------------------------------------------------------------------
# Beat schedule
# ---------------------------------------------------------------------------

#: Stale-session sweep interval: hourly, so nothing outlives its max age by
#: more than an hour.
_SESSION_SWEEP_SECONDS = 3_600

celery_app.conf.beat_schedule = {
    "cleanup-stale-extraction-sessions": {
        "task": "archguard.workers.maintenance.cleanup_sessions_task",
        "schedule": _SESSION_SWEEP_SECONDS,
        "options": {"queue": "archguard"},
    },
}
