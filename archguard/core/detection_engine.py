"""DetectionEngine — PII matching over extracted archive contents.

For each extracted file the engine decodes the content
(:mod:`archguard.core.text_decoder`), runs every *active* pattern of the
injected :class:`~archguard.core.patterns.registry.PatternRegistry` over the
text and turns surviving matches into :class:`Detection` objects.

**Validation**: a pattern with a validator drops every match the validator
rejects; patterns without one report their matches as validated.

**Risk**: see :mod:`archguard.core.risk`.  Corroboration only looks at the
detections produced in the same pass, so a disabled pattern never
corroborates anything.

**Ordering**: output is sorted by source file, then character offset, then
pattern registration order.  Given the same files and registry the result is
identical across runs.

**Titular**: each detection names its data subject, the last full name that
ends before the match in the same file (``"Não identificado"`` when there is
none).  Full-name detections are their own titular.

**Binary files** are listed in :attr:`DetectionReport.skipped_binary` and do
not fail the job.

Usage::

    from archguard.core.detection_engine import DetectionEngine
    from archguard.core.patterns import PatternRegistry

    engine = DetectionEngine(PatternRegistry.with_builtins())
    report = engine.analyse(extracted_files)
    for d in report.detections:
        print(d.source_file, d.pattern_name, d.risk_level)
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional, Sequence

from prometheus_client import Counter

from archguard.core import risk
from archguard.core.archive_extractor import ExtractedFile
from archguard.core.patterns.br_patterns import FULL_NAME_PATTERN, FULL_NAME_RE
from archguard.core.patterns.registry import DetectionPattern, PatternRegistry
from archguard.core.text_decoder import BinaryContentError, decode_file
from archguard.core.types import PatternCategory, RiskLevel

logger = logging.getLogger(__name__)

#: Characters captured on each side of a match.
CONTEXT_CHARS = 60

#: Titular reported when no name precedes a match.
UNIDENTIFIED_TITULAR = "Não identificado"

Decoder = Callable[[str, bytes], str]

detections_total = Counter(
    "archguard_detections_total",
    "PII detections by pattern and final risk level",
    ["pattern", "risk_level"],
)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Detection:
    """One PII occurrence in one extracted file.

    Attributes:
        pattern_name: Name of the pattern that matched.
        category: Category of that pattern.
        matched_value: The exact matched substring.  Treat as PII: redact
            before writing to secondary stores.
        source_file: Archive-relative path of the file.
        offset: Character offset of the match in the decoded text.
        validated: Result of the pattern's validator (``True`` for patterns
            without one).
        risk_level: Final level after escalations.
        sensitivity_score: 0-10 score derived from *risk_level*.
        context: Up to :data:`CONTEXT_CHARS` characters either side of the
            match.
        escalations: Rules that raised the level above its base.
        ai_confidence: Confidence reported by the optional re-scorer.
        recommendations: Handling advice reported by the optional re-scorer.
        titular: Data subject the match belongs to: the last full name
            ending before it in the same file, or the match itself for
            full-name detections.
    """

    pattern_name: str
    category: PatternCategory
    matched_value: str
    source_file: str
    offset: int
    validated: bool
    risk_level: RiskLevel
    sensitivity_score: int
    context: str = ""
    escalations: tuple[risk.Escalation, ...] = ()
    ai_confidence: Optional[float] = None
    recommendations: tuple[str, ...] = ()
    titular: str = UNIDENTIFIED_TITULAR

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["risk_level"] = self.risk_level.value
        data["escalations"] = [e.value for e in self.escalations]
        data["recommendations"] = list(self.recommendations)
        return data


@dataclass(frozen=True)
class DetectionReport:
    """Outcome of one detection pass over an archive."""

    detections: tuple[Detection, ...] = ()
    skipped_binary: tuple[str, ...] = ()
    files_scanned: int = 0

    @property
    def risk(self) -> risk.RiskSummary:
        return risk.summarise(d.risk_level for d in self.detections)


@dataclass
class _Candidate:
    pattern: DetectionPattern
    order: int
    value: str
    offset: int
    validated: bool
    context: str = field(default="")
    titular: str = UNIDENTIFIED_TITULAR


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _context(text: str, start: int, end: int, width: int) -> str:
    return text[max(0, start - width):end + width]


class _Titulars:
    """Full names found in one text, searchable by position."""

    def __init__(self, text: str) -> None:
        matches = list(FULL_NAME_RE.finditer(text))
        self._ends = [m.end() for m in matches]
        self._names = [m.group() for m in matches]

    def before(self, offset: int) -> str:
        index = bisect.bisect_right(self._ends, offset) - 1
        return self._names[index] if index >= 0 else UNIDENTIFIED_TITULAR


def _match_text(
    text: str,
    patterns: Sequence[DetectionPattern],
    context_chars: int,
) -> list[_Candidate]:
    candidates: list[_Candidate] = []
    titulars: Optional[_Titulars] = None
    for order, pattern in enumerate(patterns):
        for match in pattern.regex.finditer(text):
            value = match.group()
            if not value.strip():
                continue
            validated = pattern.is_valid_match(value)
            if pattern.validator is not None and not validated:
                logger.debug("Match suppressed by validator pattern=%s offset=%d", pattern.name, match.start())
                continue
            if pattern.name == FULL_NAME_PATTERN:
                titular = value
            else:
                titulars = titulars or _Titulars(text)
                titular = titulars.before(match.start())
            candidates.append(
                _Candidate(
                    pattern=pattern,
                    order=order,
                    value=value,
                    offset=match.start(),
                    validated=validated,
                    context=_context(text, match.start(), match.end(), context_chars),
                    titular=titular,
                )
            )
    return candidates


def _classify_file(source_file: str, candidates: list[_Candidate]) -> list[tuple[_Candidate, Detection]]:
    has_document = any(c.pattern.category is PatternCategory.DOCUMENT for c in candidates)
    results = []
    for c in candidates:
        level, escalations = risk.classify(
            c.pattern.category,
            c.validated,
            c.pattern.severity,
            corroborated=has_document,
            sensitive=risk.has_sensitive_keyword(c.context, source_file),
        )
        detection = Detection(
            pattern_name=c.pattern.name,
            category=c.pattern.category,
            matched_value=c.value,
            source_file=source_file,
            offset=c.offset,
            validated=c.validated,
            risk_level=level,
            sensitivity_score=risk.sensitivity_score(level),
            context=c.context,
            escalations=escalations,
            titular=c.titular,
        )
        results.append((c, detection))
    return results


def scan_text(
    text: str,
    source_file: str,
    registry: PatternRegistry,
    *,
    context_chars: int = CONTEXT_CHARS,
) -> list[Detection]:
    """Run the active patterns of *registry* over one decoded text."""
    patterns = registry.active_patterns()
    classified = _classify_file(source_file, _match_text(text, patterns, context_chars))
    classified.sort(key=lambda pair: (pair[0].offset, pair[0].order))
    return [d for _, d in classified]


def analyse(
    files: Sequence[ExtractedFile],
    registry: PatternRegistry,
    *,
    decoder: Decoder = decode_file,
    context_chars: int = CONTEXT_CHARS,
) -> DetectionReport:
    """Decode every file and collect detections.

    The registry is snapshotted once, so a concurrent enable/disable does not
    change the pattern set half-way through an archive.
    """
    patterns = registry.active_patterns()
    keyed: list[tuple[tuple[str, int, int], Detection]] = []
    skipped: list[str] = []
    scanned = 0

    for extracted in files:
        try:
            text = decoder(extracted.relative_path, extracted.read_bytes())
        except BinaryContentError as exc:
            logger.info("Skipping binary file file=%s reason=%s", extracted.relative_path, exc)
            skipped.append(extracted.relative_path)
            continue
        scanned += 1
        candidates = _match_text(text, patterns, context_chars)
        for c, detection in _classify_file(extracted.relative_path, candidates):
            keyed.append(((extracted.relative_path, c.offset, c.order), detection))

    keyed.sort(key=lambda pair: pair[0])
    detections = tuple(d for _, d in keyed)
    for d in detections:
        detections_total.labels(pattern=d.pattern_name, risk_level=d.risk_level.value).inc()

    logger.info(
        "Detection complete files_scanned=%d skipped_binary=%d detections=%d",
        scanned,
        len(skipped),
        len(detections),
    )
    return DetectionReport(detections=detections, skipped_binary=tuple(skipped), files_scanned=scanned)


def detect(files: Sequence[ExtractedFile], registry: PatternRegistry) -> list[Detection]:
    """Return the ordered detections for *files*."""
    return list(analyse(files, registry).detections)


class DetectionEngine:
    """Binds a :class:`PatternRegistry` to the module-level functions.

    Args:
        registry: Pattern set to match with.  Mutations to it take effect on
            the next :meth:`analyse` call.
        decoder: Text decoder; injectable for tests.
    """

    def __init__(
        self,
        registry: PatternRegistry,
        *,
        decoder: Decoder = decode_file,
        context_chars: int = CONTEXT_CHARS,
    ) -> None:
        self.registry = registry
        self._decoder = decoder
        self._context_chars = context_chars

    def analyse(self, files: Sequence[ExtractedFile]) -> DetectionReport:
        return analyse(files, self.registry, decoder=self._decoder, context_chars=self._context_chars)

    def detect(self, files: Sequence[ExtractedFile]) -> list[Detection]:
        return list(self.analyse(files).detections)
