"""Pydantic schemas for the pattern administration API."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from archguard.core.patterns import DetectionPattern

CategoryLiteral = Literal["document", "personal", "contact", "financial", "custom"]
SeverityLiteral = Literal["low", "medium", "high", "critical"]


class PatternOut(BaseModel):
    name: str
    pattern: str
    category: CategoryLiteral
    enabled: bool
    builtin: bool
    has_validator: bool
    description: str = ""
    severity: Optional[SeverityLiteral] = None
    examples: list[str] = Field(default_factory=list)

    @classmethod
    def from_pattern(cls, pattern: DetectionPattern) -> "PatternOut":
        return cls(
            name=pattern.name,
            pattern=pattern.regex.pattern,
            category=pattern.category.value,
            enabled=pattern.enabled,
            builtin=pattern.builtin,
            has_validator=pattern.validator is not None,
            description=pattern.description,
            severity=pattern.severity.value if pattern.severity else None,
            examples=list(pattern.examples),
        )


class PatternCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    pattern: str = Field(min_length=1, description="Regular expression, matched case-insensitively")
    category: CategoryLiteral = "custom"
    description: str = ""
    severity: Optional[SeverityLiteral] = None
    enabled: bool = True


class PatternUpdate(BaseModel):
    enabled: bool


class PreviewRequest(BaseModel):
    pattern: str = Field(min_length=1)
    text: str


class PreviewMatch(BaseModel):
    match: str
    index: int


class PreviewOut(BaseModel):
    count: int
    matches: list[PreviewMatch]
