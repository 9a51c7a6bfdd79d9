"""PII pattern library for ArchGuard.

Provides the built-in Brazilian pattern set, the runtime registry and custom
pattern loading.
"""

from archguard.core.patterns.br_patterns import builtin_patterns, load_custom_patterns
from archguard.core.patterns.registry import (
    BuiltinPatternError,
    DetectionPattern,
    DuplicateNameError,
    InvalidPatternError,
    NotFoundError,
    PatternRegistry,
    PatternRegistryError,
    preview_matches,
)

__all__ = [
    "BuiltinPatternError",
    "DetectionPattern",
    "DuplicateNameError",
    "InvalidPatternError",
    "NotFoundError",
    "PatternRegistry",
    "PatternRegistryError",
    "builtin_patterns",
    "load_custom_patterns",
    "preview_matches",
]
