"""Shared pytest configuration and fixtures for ArchGuard tests.

Sets environment variables before any archguard module is imported, so that
``archguard.config.get_settings()`` never picks up a developer's ``.env``
values for the queue backend or Redis DSN.
"""
from __future__ import annotations

import os
import zipfile
from pathlib import Path
from typing import Callable, Optional

# Set env vars before any archguard module is imported
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("SCANNER_BACKEND", "clamdscan")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest

from archguard.core.archive_extractor import ExtractedFile
from archguard.core.errors import ArchGuardError
from archguard.core.scan_gateway import ScanGateway, ScanVerdict


# ---------------------------------------------------------------------------
# Fake antivirus gateway
# ---------------------------------------------------------------------------


class FakeGateway(ScanGateway):
    """In-process gateway returning a canned verdict or raising a canned error."""

    ENGINE_NAME = "fake"

    def __init__(
        self,
        *,
        threats: tuple[str, ...] = (),
        error: Optional[ArchGuardError] = None,
        available: bool = True,
    ) -> None:
        super().__init__()
        self.threats = threats
        self.error = error
        self.available = available
        self.scanned: list[str] = []

    async def scan(self, file_path, max_size, timeout) -> ScanVerdict:
        self.scanned.append(str(file_path))
        if self.error is not None:
            raise self.error
        return ScanVerdict(
            is_infected=bool(self.threats),
            threat_names=tuple(self.threats),
            scanned_path=str(file_path),
            engine=self.ENGINE_NAME,
        )

    async def is_available(self) -> bool:
        return self.available


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


# ---------------------------------------------------------------------------
# Archive helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def make_zip(tmp_path: Path) -> Callable[..., Path]:
    """Return a factory writing a ZIP of ``{name: bytes|str}`` entries under *tmp_path*."""

    def _make(
        entries: dict[str, bytes | str],
        name: str = "upload.zip",
        compression: int = zipfile.ZIP_DEFLATED,
    ) -> Path:
        path = tmp_path / name
        with zipfile.ZipFile(path, "w", compression=compression) as zf:
            for entry_name, content in entries.items():
                data = content.encode("utf-8") if isinstance(content, str) else content
                zf.writestr(entry_name, data)
        return path

    return _make


@pytest.fixture
def make_extracted(tmp_path: Path) -> Callable[[str, bytes | str], ExtractedFile]:
    """Return a factory writing one file and wrapping it as an :class:`ExtractedFile`."""
    root = tmp_path / "extracted"

    def _make(relative_path: str, content: bytes | str) -> ExtractedFile:
        data = content.encode("utf-8") if isinstance(content, str) else content
        target = root / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return ExtractedFile(relative_path=relative_path, size_bytes=len(data), path=target)

    return _make
