"""Streaming, bomb-safe ZIP extraction for the ArchGuard pipeline.

:func:`extract` unpacks an already-scanned archive into a per-job extraction
root.  Entries are processed one at a time and copied in fixed-size chunks so
every limit is enforced *while* bytes are being written, never after a full
unpack:

+----------------------+------------------------------------------------------+
| Limit                | Enforcement                                          |
+======================+======================================================+
| entry count          | checked against the central directory up front       |
+----------------------+------------------------------------------------------+
| per-entry size       | declared size up front, actual bytes while streaming |
+----------------------+------------------------------------------------------+
| compression ratio    | actual bytes written vs. compressed size, per chunk  |
+----------------------+------------------------------------------------------+
| total size           | running total across entries, per chunk              |
+----------------------+------------------------------------------------------+

Declared sizes in the central directory are attacker-controlled, which is why
the actual stream is measured as well.

**Path safety**: entry names are normalised to POSIX form; absolute paths,
drive-qualified paths and names that climb out of the root after
normalisation raise :class:`~archguard.core.errors.PathTraversalError`.
Symlink entries are skipped.

**All-or-nothing**: on any error the partial output is removed before the
exception propagates.

Usage::

    from archguard.core.archive_extractor import ExtractionLimits, extract

    files = extract("/srv/uploads/a.zip", "/srv/tmp/extracts/job-1", ExtractionLimits())
    for f in files:
        print(f.relative_path, f.size_bytes)
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import shutil
import stat
import time
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Optional

from archguard.core.errors import CorruptArchiveError, PathTraversalError, ZipBombError

if TYPE_CHECKING:
    from archguard.config import Settings

logger = logging.getLogger(__name__)

#: Copy buffer size used while streaming entries to disk.
CHUNK_SIZE = 64 * 1024

_MIB = 1024 * 1024
_DRIVE_RE = re.compile(r"^[A-Za-z]:")
# General purpose flag bit 0: entry is encrypted.
_FLAG_ENCRYPTED = 0x1


@dataclass(frozen=True)
class ExtractionLimits:
    """Resource ceilings applied to one archive.

    Attributes:
        max_total_size: Maximum aggregate uncompressed bytes.
        max_entry_size: Maximum uncompressed bytes of one entry.
        max_compression_ratio: Maximum uncompressed/compressed ratio of one
            entry.
        max_entry_count: Maximum number of file entries.
    """

    max_total_size: int = 500 * _MIB
    max_entry_size: int = 100 * _MIB
    max_compression_ratio: float = 100.0
    max_entry_count: int = 1000

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ExtractionLimits":
        return cls(
            max_total_size=settings.max_archive_total_size,
            max_entry_size=settings.max_entry_size,
            max_compression_ratio=settings.max_compression_ratio,
            max_entry_count=settings.max_entry_count,
        )


@dataclass(frozen=True)
class ExtractedFile:
    """A single file written under the extraction root.

    Attributes:
        relative_path: Sanitised, root-relative POSIX path.
        size_bytes: Bytes actually written.
        path: Absolute location on disk; owned by the extraction stage until
            the job's extraction root is removed.
        compressed_size: Compressed size recorded in the archive.
    """

    relative_path: str
    size_bytes: int
    path: Path
    compressed_size: int = 0

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


# ---------------------------------------------------------------------------
# Path handling
# ---------------------------------------------------------------------------


def sanitize_entry_name(name: str) -> Optional[PurePosixPath]:
    """Return the normalised relative path for an archive entry name.

    Returns ``None`` for names that normalise to the root itself (``"./"``).

    Raises:
        PathTraversalError: For absolute, drive-qualified or escaping names.
    """
    candidate = name.replace("\\", "/")
    if "\x00" in candidate:
        raise PathTraversalError(f"Entry name contains NUL byte: {name!r}", entry=name)
    if candidate.startswith("/") or _DRIVE_RE.match(candidate):
        raise PathTraversalError(f"Absolute entry path: {name!r}", entry=name)

    normalised = posixpath.normpath(candidate)
    if normalised in ("", "."):
        return None
    if normalised == ".." or normalised.startswith("../"):
        raise PathTraversalError(f"Entry escapes extraction root: {name!r}", entry=name)
    return PurePosixPath(normalised)


def _is_symlink(info: zipfile.ZipInfo) -> bool:
    return stat.S_ISLNK(info.external_attr >> 16)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract(
    archive_path: str | os.PathLike[str],
    dest_root: str | os.PathLike[str],
    limits: ExtractionLimits,
) -> list[ExtractedFile]:
    """Extract *archive_path* into *dest_root* under *limits*.

    Args:
        archive_path: ZIP archive that already passed the antivirus scan.
        dest_root: Extraction directory; created when missing.
        limits: Resource ceilings for this archive.

    Returns:
        Extracted files in archive order.

    Raises:
        ZipBombError: A size, ratio or count limit was exceeded.
        PathTraversalError: An entry would land outside *dest_root*.
        CorruptArchiveError: The archive or an entry cannot be read.
    """
    root = Path(dest_root)
    root_existed = root.exists()
    root.mkdir(parents=True, exist_ok=True)
    root = root.resolve()

    written: list[Path] = []
    try:
        files = _extract_entries(Path(archive_path), root, limits, written)
    except BaseException:
        _discard(root, root_existed, written)
        raise

    logger.info(
        "Archive extracted archive=%s files=%d total_bytes=%d",
        archive_path,
        len(files),
        sum(f.size_bytes for f in files),
    )
    return files


def _extract_entries(
    archive_path: Path,
    root: Path,
    limits: ExtractionLimits,
    written: list[Path],
) -> list[ExtractedFile]:
    try:
        zf = zipfile.ZipFile(archive_path)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as exc:
        raise CorruptArchiveError(f"Cannot open ZIP archive {archive_path.name}: {exc}") from exc
    except OSError as exc:
        raise CorruptArchiveError(f"Cannot read archive {archive_path.name}: {exc}") from exc

    with zf:
        members = [m for m in zf.infolist() if not m.is_dir()]
        if len(members) > limits.max_entry_count:
            raise ZipBombError(
                f"Archive has {len(members)} entries (limit {limits.max_entry_count})",
                limit="entry_count",
            )

        files: list[ExtractedFile] = []
        seen: set[PurePosixPath] = set()
        total = 0

        for info in members:
            relative = sanitize_entry_name(info.filename)
            if relative is None:
                continue
            if _is_symlink(info):
                logger.warning("Skipping symlink entry entry=%s", info.filename)
                continue
            if info.flag_bits & _FLAG_ENCRYPTED:
                raise CorruptArchiveError(f"Encrypted entry not supported: {info.filename}")
            if relative in seen:
                logger.warning("Skipping duplicate entry entry=%s", info.filename)
                continue
            seen.add(relative)

            target = (root / relative).resolve()
            if not target.is_relative_to(root):
                raise PathTraversalError(
                    f"Entry resolves outside extraction root: {info.filename!r}",
                    entry=info.filename,
                )

            if info.file_size > limits.max_entry_size:
                raise ZipBombError(
                    f"Entry {info.filename} declares {info.file_size} bytes "
                    f"(limit {limits.max_entry_size})",
                    entry=info.filename,
                    limit="entry_size",
                )
            if total + info.file_size > limits.max_total_size:
                raise ZipBombError(
                    f"Archive exceeds total size limit {limits.max_total_size}",
                    entry=info.filename,
                    limit="total_size",
                )

            size = _stream_entry(zf, info, target, limits, total, written)
            total += size
            files.append(
                ExtractedFile(
                    relative_path=relative.as_posix(),
                    size_bytes=size,
                    path=target,
                    compressed_size=info.compress_size,
                )
            )
        return files


def _stream_entry(
    zf: zipfile.ZipFile,
    info: zipfile.ZipInfo,
    target: Path,
    limits: ExtractionLimits,
    total_before: int,
    written: list[Path],
) -> int:
    """Copy one entry to *target* in chunks, enforcing limits per chunk."""
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except (FileExistsError, NotADirectoryError) as exc:
        raise CorruptArchiveError(f"Entry {info.filename} is nested under a file entry") from exc
    ratio_ceiling = max(info.compress_size, 1) * limits.max_compression_ratio
    size = 0
    try:
        with zf.open(info) as src, target.open("xb") as dst:
            written.append(target)
            while True:
                chunk = src.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > limits.max_entry_size:
                    raise ZipBombError(
                        f"Entry {info.filename} exceeds {limits.max_entry_size} bytes",
                        entry=info.filename,
                        limit="entry_size",
                    )
                if size > ratio_ceiling:
                    raise ZipBombError(
                        f"Entry {info.filename} exceeds compression ratio "
                        f"{limits.max_compression_ratio:g}",
                        entry=info.filename,
                        limit="ratio",
                    )
                if total_before + size > limits.max_total_size:
                    raise ZipBombError(
                        f"Archive exceeds total size limit {limits.max_total_size}",
                        entry=info.filename,
                        limit="total_size",
                    )
                dst.write(chunk)
    except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError) as exc:
        raise CorruptArchiveError(f"Cannot decompress entry {info.filename}: {exc}") from exc
    except RuntimeError as exc:
        # zipfile raises RuntimeError for encrypted entries without a password.
        raise CorruptArchiveError(f"Cannot read entry {info.filename}: {exc}") from exc
    except FileExistsError as exc:
        if target.is_dir():
            raise CorruptArchiveError(f"Entry {info.filename} collides with a directory entry") from exc
        raise PathTraversalError(
            f"Entry collides with an existing file: {info.filename!r}", entry=info.filename
        ) from exc
    except (NotADirectoryError, IsADirectoryError) as exc:
        raise CorruptArchiveError(f"Cannot write entry {info.filename}: {exc}") from exc
    return size


def _discard(root: Path, root_existed: bool, written: list[Path]) -> None:
    """Remove partial output after a failed extraction."""
    if not root_existed:
        shutil.rmtree(root, ignore_errors=True)
        return
    for path in reversed(written):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
    # Prune directories created for the discarded files, deepest first.
    for path in sorted({p.parent for p in written}, key=lambda p: len(p.parts), reverse=True):
        while path != root and path.is_relative_to(root):
            try:
                path.rmdir()
            except OSError:
                break
            path = path.parent


# ---------------------------------------------------------------------------
# Session housekeeping
# ---------------------------------------------------------------------------


def session_dir(work_dir: str | os.PathLike[str], job_id: str) -> Path:
    """Return the extraction root for *job_id* under *work_dir*."""
    return Path(work_dir) / f"session-{job_id}"


def remove_session(path: str | os.PathLike[str]) -> None:
    """Delete an extraction root and everything below it."""
    shutil.rmtree(path, ignore_errors=True)
    logger.debug("Extraction root removed path=%s", path)


def cleanup_stale_sessions(
    base_dir: str | os.PathLike[str],
    max_age_hours: float = 24,
    *,
    now: Optional[float] = None,
) -> int:
    """Remove extraction roots under *base_dir* older than *max_age_hours*.

    Returns:
        Number of directories removed.
    """
    base = Path(base_dir)
    if not base.is_dir():
        return 0

    cutoff = (now if now is not None else time.time()) - max_age_hours * 3600
    removed = 0
    for entry in base.iterdir():
        if not entry.is_dir() or entry.is_symlink():
            continue
        try:
            if entry.stat().st_mtime >= cutoff:
                continue
        except FileNotFoundError:
            continue
        shutil.rmtree(entry, ignore_errors=True)
        removed += 1
        logger.info("Stale extraction session removed path=%s", entry)
    return removed
