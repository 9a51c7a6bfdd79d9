"""Unit tests for archguard/workers/maintenance.py and the beat schedule."""

from __future__ import annotations

import os
import time

import pytest

from archguard.celery_app import celery_app
from archguard.config import get_settings
from archguard.workers.maintenance import cleanup_sessions_task


@pytest.fixture
def work_dir(tmp_path, monkeypatch):
    base = tmp_path / "work"
    base.mkdir()
    monkeypatch.setenv("WORK_DIR", str(base))
    get_settings.cache_clear()
    yield base
    get_settings.cache_clear()


def _age(path, hours: float) -> None:
    stamp = time.time() - hours * 3600
    os.utime(path, (stamp, stamp))


def test_removes_only_stale_sessions(work_dir) -> None:
    stale = work_dir / "session-old"
    (stale / "nested").mkdir(parents=True)
    (stale / "nested" / "f.txt").write_text("x")
    _age(stale, 30)
    fresh = work_dir / "session-new"
    fresh.mkdir()

    result = cleanup_sessions_task(max_age_hours=24)

    assert result == {"work_dir": str(work_dir), "removed": 1}
    assert not stale.exists()
    assert fresh.exists()


def test_uses_configured_max_age(work_dir, monkeypatch) -> None:
    monkeypatch.setenv("SESSION_MAX_AGE_HOURS", "1")
    get_settings.cache_clear()
    session = work_dir / "session-a"
    session.mkdir()
    _age(session, 2)

    assert cleanup_sessions_task()["removed"] == 1


def test_missing_work_dir(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("WORK_DIR", str(tmp_path / "absent"))
    get_settings.cache_clear()
    try:
        assert cleanup_sessions_task(max_age_hours=1)["removed"] == 0
    finally:
        get_settings.cache_clear()


def test_beat_schedule_registers_sweep() -> None:
    entry = celery_app.conf.beat_schedule["cleanup-stale-extraction-sessions"]
    assert entry["task"] == cleanup_sessions_task.name
    assert entry["schedule"] == 3600
