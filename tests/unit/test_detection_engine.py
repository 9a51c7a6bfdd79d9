"""Unit tests for archguard/core/detection_engine.py.

Files are written to ``tmp_path`` and wrapped as ``ExtractedFile`` objects by
the ``make_extracted`` fixture; no archive or antivirus is involved.

Coverage areas:

* Validated matches become detections; checksum failures are suppressed.
* Risk escalation by corroboration and sensitive context / file name.
* Disabled patterns neither detect nor corroborate.
* Output ordering (file, offset, registration order) and determinism.
* Binary files are skipped without failing the pass.
* Titular attribution from the closest preceding full name.
"""

from __future__ import annotations

import pytest

from archguard.core.detection_engine import (
    CONTEXT_CHARS,
    UNIDENTIFIED_TITULAR,
    DetectionEngine,
    analyse,
    detect,
    scan_text,
)
from archguard.core.patterns import PatternRegistry
from archguard.core.risk import Escalation
from archguard.core.types import PatternCategory, RiskLevel

CPF_LINE = "CPF 123.456.789-09 tel (11) 99999-9999"


@pytest.fixture
def registry() -> PatternRegistry:
    return PatternRegistry.with_builtins()


class TestSingleMatches:
    def test_valid_cpf_reported(self, registry, make_extracted) -> None:
        files = [make_extracted("clientes.txt", "CPF: 123.456.789-09")]
        detections = detect(files, registry)
        assert len(detections) == 1
        d = detections[0]
        assert d.pattern_name == "CPF"
        assert d.category is PatternCategory.DOCUMENT
        assert d.matched_value == "123.456.789-09"
        assert d.source_file == "clientes.txt"
        assert d.offset == 5
        assert d.validated is True
        assert d.risk_level is RiskLevel.HIGH
        assert d.sensitivity_score == 8
        assert d.escalations == ()

    def test_invalid_checksum_suppressed(self, registry, make_extracted) -> None:
        files = [make_extracted("clientes.txt", "CPF: 123.456.789-00")]
        assert detect(files, registry) == []

    def test_context_window(self, registry) -> None:
        text = "x" * 100 + " 123.456.789-09 " + "y" * 100
        (d,) = scan_text(text, "f.txt", registry)
        assert len(d.context) == CONTEXT_CHARS * 2 + len("123.456.789-09")
        assert d.context.strip("xy ").startswith("123.456.789-09")


class TestEscalation:
    def test_contact_corroborated_by_document(self, registry, make_extracted) -> None:
        detections = detect([make_extracted("lista.txt", CPF_LINE)], registry)
        assert [d.pattern_name for d in detections] == ["CPF", "Telefone"]
        phone = detections[1]
        assert phone.risk_level is RiskLevel.HIGH
        assert phone.escalations == (Escalation.CORROBORATED,)

    def test_corroboration_is_per_file(self, registry, make_extracted) -> None:
        files = [
            make_extracted("a.txt", "CPF 123.456.789-09"),
            make_extracted("b.txt", "tel (11) 99999-9999"),
        ]
        phone = [d for d in detect(files, registry) if d.pattern_name == "Telefone"][0]
        assert phone.risk_level is RiskLevel.MEDIUM

    def test_sensitive_file_name(self, registry, make_extracted) -> None:
        files = [make_extracted("backup/contatos.csv", "email: ana@example.com")]
        (d,) = detect(files, registry)
        assert d.pattern_name == "Email"
        assert d.risk_level is RiskLevel.HIGH
        assert d.escalations == (Escalation.SENSITIVE_CONTEXT,)

    def test_sensitive_keyword_in_context(self, registry, make_extracted) -> None:
        files = [make_extracted("f.txt", "documento CONFIDENCIAL CPF 123.456.789-09")]
        (d,) = detect(files, registry)
        assert d.risk_level is RiskLevel.CRITICAL
        assert d.sensitivity_score == 10

    def test_disabled_pattern_never_corroborates(self, registry, make_extracted) -> None:
        registry.set_enabled("CPF", False)
        detections = detect([make_extracted("lista.txt", CPF_LINE)], registry)
        assert [d.pattern_name for d in detections] == ["Telefone"]
        assert detections[0].risk_level is RiskLevel.MEDIUM


class TestOrderingAndDeterminism:
    def test_sorted_by_file_then_offset(self, registry, make_extracted) -> None:
        files = [
            make_extracted("b.txt", "CPF 123.456.789-09"),
            make_extracted("a.txt", "x ana@example.com CPF 123.456.789-09"),
        ]
        detections = detect(files, registry)
        assert [(d.source_file, d.pattern_name) for d in detections] == [
            ("a.txt", "Email"),
            ("a.txt", "CPF"),
            ("b.txt", "CPF"),
        ]

    def test_same_input_same_output(self, registry, make_extracted) -> None:
        files = [make_extracted("lista.txt", CPF_LINE), make_extracted("x.txt", "ana@example.com")]
        assert detect(files, registry) == detect(files, registry)

    def test_custom_pattern_with_severity(self, registry, make_extracted) -> None:
        registry.add_custom("MATRICULA", r"MAT-\d{6}", severity="critical")
        (d,) = detect([make_extracted("rh.txt", "mat-123456")], registry)
        assert d.pattern_name == "MATRICULA"
        assert d.category is PatternCategory.CUSTOM
        assert d.validated is True
        assert d.risk_level is RiskLevel.CRITICAL


class TestReport:
    def test_binary_file_skipped(self, registry, make_extracted) -> None:
        files = [
            make_extracted("data.bin", b"\x00\x01CPF 123.456.789-09"),
            make_extracted("ok.txt", "CPF 123.456.789-09"),
        ]
        report = analyse(files, registry)
        assert report.skipped_binary == ("data.bin",)
        assert report.files_scanned == 1
        assert len(report.detections) == 1

    def test_risk_summary(self, registry, make_extracted) -> None:
        report = analyse([make_extracted("lista.txt", CPF_LINE)], registry)
        assert report.risk.overall is RiskLevel.HIGH
        assert report.risk.counts[RiskLevel.HIGH] == 2

    def test_engine_uses_injected_decoder(self, registry, make_extracted) -> None:
        engine = DetectionEngine(registry, decoder=lambda path, data: "CPF 123.456.789-09")
        report = engine.analyse([make_extracted("anything.pdf", b"%PDF")])
        assert [d.pattern_name for d in report.detections] == ["CPF"]

    def test_to_dict_is_json_friendly(self, registry, make_extracted) -> None:
        (d,) = detect([make_extracted("f.txt", "CPF 123.456.789-09")], registry)
        data = d.to_dict()
        assert data["category"] == "document"
        assert data["risk_level"] == "high"
        assert data["escalations"] == []
        assert data["ai_confidence"] is None


# ---------------------------------------------------------------------------
# Titular attribution
# ---------------------------------------------------------------------------


class TestTitular:
    def test_nearest_preceding_name(self, registry, make_extracted) -> None:
        text = "Titular: Maria da Silva, CPF 123.456.789-09"
        detections = detect([make_extracted("clientes.txt", text)], registry)
        (cpf,) = [d for d in detections if d.pattern_name == "CPF"]
        assert cpf.titular == "Maria da Silva"
        for name in (d for d in detections if d.pattern_name == "Nome Completo"):
            assert name.titular == name.matched_value

    def test_each_match_takes_the_closest_name(self, registry, make_extracted) -> None:
        text = "Maria da Silva CPF 123.456.789-09\nJoão Pereira CPF 529.982.247-25\n"
        detections = detect([make_extracted("clientes.txt", text)], registry)
        assert [(d.matched_value, d.titular) for d in detections if d.pattern_name == "CPF"] == [
            ("123.456.789-09", "Maria da Silva"),
            ("529.982.247-25", "João Pereira"),
        ]

    def test_no_name_is_unidentified(self, registry, make_extracted) -> None:
        (d,) = detect([make_extracted("f.txt", "CPF 123.456.789-09")], registry)
        assert d.titular == UNIDENTIFIED_TITULAR == "Não identificado"

    def test_names_do_not_cross_files(self, registry, make_extracted) -> None:
        files = [
            make_extracted("a.txt", "Maria da Silva"),
            make_extracted("b.txt", "CPF 123.456.789-09"),
        ]
        (cpf,) = [d for d in detect(files, registry) if d.pattern_name == "CPF"]
        assert cpf.titular == UNIDENTIFIED_TITULAR

    def test_titular_serialised(self, registry, make_extracted) -> None:
        (d,) = detect([make_extracted("f.txt", "CPF 123.456.789-09")], registry)
        assert d.to_dict()["titular"] == UNIDENTIFIED_TITULAR


# ---------------------------------------------------------------------------
# Enable / disable round trip
# ---------------------------------------------------------------------------


class TestPatternToggle:
    def test_disable_then_enable_restores_detection(self, registry, make_extracted) -> None:
        files = [make_extracted("f.txt", "CPF 123.456.789-09")]
        pattern_count = len(registry.all_patterns())

        registry.set_enabled("CPF", False)
        assert all(d.pattern_name != "CPF" for d in detect(files, registry))

        registry.set_enabled("CPF", True)
        assert [d.pattern_name for d in detect(files, registry)] == ["CPF"]
        assert len(registry.all_patterns()) == pattern_count
