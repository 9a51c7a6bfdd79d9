"""ArchGuard worker package.

Modules
-------
pool
    In-process asyncio worker pool draining the ingestion job queue.
maintenance
    Celery beat task removing stale extraction sessions.
"""
