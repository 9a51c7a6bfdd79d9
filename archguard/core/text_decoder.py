"""Best-effort text decoding of extracted files.

:func:`decode_file` turns one :class:`~archguard.core.archive_extractor.ExtractedFile`
into text for the detection engine.  Unlike a document converter it keeps the
text as close to the original as possible: plain-text formats are decoded
verbatim (no whitespace collapsing) so detection offsets and context windows
line up with the file contents.

+----------+--------------------------+-----------------------------------+
| Format   | Extensions               | Handling                          |
+==========+==========================+===================================+
| Text     | .txt .csv .json .log ... | raw decode (UTF-8, Latin-1)       |
+----------+--------------------------+-----------------------------------+
| PDF      | .pdf                     | pdfminer.six                      |
+----------+--------------------------+-----------------------------------+
| DOCX     | .docx                    | python-docx, one line per para    |
+----------+--------------------------+-----------------------------------+
| other    | anything                 | binary sniff, else raw decode     |
+----------+--------------------------+-----------------------------------+

Files that look binary (NUL bytes in the leading block) and formats whose
parser fails raise :class:`BinaryContentError`; the detection engine records
them as ``skipped_binary`` instead of failing the job.
"""

from __future__ import annotations

import io
import logging
from pathlib import PurePosixPath

import docx
from pdfminer.high_level import extract_text as pdf_extract_text

logger = logging.getLogger(__name__)

#: Bytes inspected by the binary sniffer.
SNIFF_BYTES = 8192

_PDF_EXTENSIONS = frozenset({".pdf"})
_DOCX_EXTENSIONS = frozenset({".docx"})


class BinaryContentError(Exception):
    """The file has no decodable text content."""


def looks_binary(data: bytes) -> bool:
    """Return ``True`` when the leading block contains a NUL byte."""
    return b"\x00" in data[:SNIFF_BYTES]


def decode_bytes(data: bytes) -> str:
    """Decode *data* as UTF-8 (BOM tolerated), falling back to Latin-1."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _decode_pdf(data: bytes) -> str:
    try:
        return pdf_extract_text(io.BytesIO(data))
    except Exception as exc:  # pdfminer raises a wide variety of parser errors
        raise BinaryContentError(f"PDF text extraction failed: {exc}") from exc


def _decode_docx(data: bytes) -> str:
    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as exc:  # python-docx surfaces zip/xml errors unwrapped
        raise BinaryContentError(f"DOCX text extraction failed: {exc}") from exc
    return "\n".join(p.text for p in document.paragraphs)


def decode_file(relative_path: str, data: bytes) -> str:
    """Return the text content of one extracted file.

    Args:
        relative_path: Archive-relative path; its extension selects the
            decoder.
        data: Raw file bytes.

    Raises:
        BinaryContentError: The content is binary or could not be parsed.
    """
    suffix = PurePosixPath(relative_path).suffix.lower()
    if suffix in _PDF_EXTENSIONS:
        return _decode_pdf(data)
    if suffix in _DOCX_EXTENSIONS:
        return _decode_docx(data)
    if looks_binary(data):
        raise BinaryContentError(f"Binary content: {relative_path}")
    return decode_bytes(data)
