"""Unit tests for archguard/core/text_decoder.py."""

from __future__ import annotations

import io

import docx
import pytest

from archguard.core import text_decoder
from archguard.core.text_decoder import BinaryContentError, decode_bytes, decode_file, looks_binary


class TestPlainText:
    def test_utf8_verbatim(self) -> None:
        text = "Nome: João\n\n  CPF: 123.456.789-09\t"
        assert decode_file("a.txt", text.encode("utf-8")) == text

    def test_utf8_bom_stripped(self) -> None:
        assert decode_bytes("\ufeffolá".encode("utf-8")) == "olá"

    def test_latin1_fallback(self) -> None:
        assert decode_file("a.csv", "ação".encode("latin-1")) == "ação"

    def test_unknown_extension_decoded_when_textual(self) -> None:
        assert decode_file("README", b"hello") == "hello"


class TestBinary:
    def test_nul_byte_detected(self) -> None:
        assert looks_binary(b"abc\x00def") is True
        assert looks_binary(b"abcdef") is False

    def test_nul_after_sniff_window_ignored(self) -> None:
        data = b"a" * text_decoder.SNIFF_BYTES + b"\x00"
        assert looks_binary(data) is False

    def test_binary_raises(self) -> None:
        with pytest.raises(BinaryContentError):
            decode_file("image.png", b"\x89PNG\r\n\x1a\n\x00\x00")


class TestDocuments:
    def test_docx_paragraphs_joined(self) -> None:
        document = docx.Document()
        document.add_paragraph("Cliente: Maria da Silva")
        document.add_paragraph("CPF 123.456.789-09")
        buf = io.BytesIO()
        document.save(buf)

        text = decode_file("ficha.docx", buf.getvalue())
        assert text.endswith("Cliente: Maria da Silva\nCPF 123.456.789-09")

    def test_corrupt_docx_is_binary_content(self) -> None:
        with pytest.raises(BinaryContentError):
            decode_file("broken.docx", b"not a zip")

    def test_pdf_uses_pdfminer(self, monkeypatch) -> None:
        monkeypatch.setattr(text_decoder, "pdf_extract_text", lambda fh: "CPF 123.456.789-09")
        assert decode_file("doc.PDF", b"%PDF-1.4") == "CPF 123.456.789-09"

    def test_pdf_parser_failure_is_binary_content(self, monkeypatch) -> None:
        def _boom(fh):
            raise ValueError("no /Root object")

        monkeypatch.setattr(text_decoder, "pdf_extract_text", _boom)
        with pytest.raises(BinaryContentError):
            decode_file("doc.pdf", b"%PDF-1.4")
