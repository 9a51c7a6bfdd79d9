"""Deterministic risk classification for detections.

Base levels come from :data:`BASE_RISK` (per pattern category) unless the
pattern carries its own ``severity``.  Two escalation rules then apply, each
raising the level by one step, capped at ``critical``:

* **corroboration** — a non-document detection in a file that also holds a
  validated document-category detection (CPF next to a phone number is a
  stronger identification than either alone).
* **sensitive context** — one of :data:`SENSITIVE_KEYWORDS` appears in the
  context window around the match or in the file name.

A validated document-category match is never below ``high``.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from archguard.core.types import PatternCategory, RiskLevel

BASE_RISK: dict[PatternCategory, RiskLevel] = {
    PatternCategory.DOCUMENT: RiskLevel.HIGH,
    PatternCategory.FINANCIAL: RiskLevel.HIGH,
    PatternCategory.PERSONAL: RiskLevel.MEDIUM,
    PatternCategory.CONTACT: RiskLevel.MEDIUM,
    PatternCategory.CUSTOM: RiskLevel.MEDIUM,
}

SENSITIVE_KEYWORDS: tuple[str, ...] = (
    "confidencial",
    "confidential",
    "sigiloso",
    "secret",
    "private",
    "privado",
    "backup",
    "export",
    "database",
    "dump",
    "sql",
    "senha",
    "password",
)

SENSITIVITY_SCORES: dict[RiskLevel, int] = {
    RiskLevel.LOW: 2,
    RiskLevel.MEDIUM: 5,
    RiskLevel.HIGH: 8,
    RiskLevel.CRITICAL: 10,
}


class Escalation(str, Enum):
    """Why a detection was raised above its base level."""

    CORROBORATED = "corroborated"
    SENSITIVE_CONTEXT = "sensitive_context"


def base_risk(
    category: PatternCategory,
    validated: bool,
    severity: Optional[RiskLevel] = None,
) -> RiskLevel:
    level = severity if severity is not None else BASE_RISK[category]
    if category is PatternCategory.DOCUMENT and validated and level.rank < RiskLevel.HIGH.rank:
        level = RiskLevel.HIGH
    return level


def has_sensitive_keyword(*texts: str) -> bool:
    lowered = [t.lower() for t in texts if t]
    return any(keyword in text for text in lowered for keyword in SENSITIVE_KEYWORDS)


def classify(
    category: PatternCategory,
    validated: bool,
    severity: Optional[RiskLevel] = None,
    *,
    corroborated: bool = False,
    sensitive: bool = False,
) -> tuple[RiskLevel, tuple[Escalation, ...]]:
    """Return the final risk level and the escalations that produced it."""
    level = base_risk(category, validated, severity)
    escalations: list[Escalation] = []
    if corroborated and category is not PatternCategory.DOCUMENT:
        escalations.append(Escalation.CORROBORATED)
    if sensitive:
        escalations.append(Escalation.SENSITIVE_CONTEXT)
    return level.escalate(len(escalations)), tuple(escalations)


def sensitivity_score(level: RiskLevel) -> int:
    return SENSITIVITY_SCORES[level]


@dataclass(frozen=True)
class RiskSummary:
    """Aggregate risk of a set of detections.

    Attributes:
        overall: Highest risk level present (``low`` when empty).
        counts: Number of detections per level.
    """

    overall: RiskLevel
    counts: dict[RiskLevel, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def summarise(levels: Iterable[RiskLevel]) -> RiskSummary:
    counter = Counter(levels)
    counts = {level: counter.get(level, 0) for level in RiskLevel}
    present = [level for level in RiskLevel if counts[level]]
    overall = max(present, key=lambda lvl: lvl.rank) if present else RiskLevel.LOW
    return RiskSummary(overall=overall, counts=counts)
