"""Enumerations shared by the pattern registry, detection engine and reports."""

from __future__ import annotations

from enum import Enum


class PatternCategory(str, Enum):
    """PII family a detection pattern belongs to."""

    DOCUMENT = "document"
    PERSONAL = "personal"
    CONTACT = "contact"
    FINANCIAL = "financial"
    CUSTOM = "custom"


class RiskLevel(str, Enum):
    """Severity levels for detections, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def escalate(self, steps: int = 1) -> "RiskLevel":
        """Return the level *steps* above this one, capped at ``CRITICAL``."""
        return _RISK_ORDER[min(self.rank + steps, len(_RISK_ORDER) - 1)]


_RISK_ORDER: tuple[RiskLevel, ...] = (
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
)
