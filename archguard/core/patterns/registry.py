"""PatternRegistry — the owned, mutable set of PII detection patterns.

A registry instance is created per process (or per test) and injected into
the :class:`~archguard.core.detection_engine.DetectionEngine`; there is no
module-level pattern list that callers mutate.

**Ordering**: :meth:`PatternRegistry.active_patterns` yields enabled patterns
in registration order so that detection output is reproducible across runs.

**Concurrency**: the registry keeps its patterns in an immutable tuple.
Readers grab the current tuple without locking; writers build a new tuple
while holding a lock and swap it in.  A detection pass that started before a
mutation keeps using the snapshot it took.

Usage::

    from archguard.core.patterns import PatternRegistry

    registry = PatternRegistry.with_builtins()
    registry.set_enabled("CEP", False)
    registry.add_custom("EMPLOYEE_ID", r"EMP-\\d{6}")
    for pattern in registry.active_patterns():
        print(pattern.name, pattern.category)
"""

from __future__ import annotations

import dataclasses
import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterable

from archguard.core.types import PatternCategory, RiskLevel

logger = logging.getLogger(__name__)

Validator = Callable[[str], bool]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PatternRegistryError(Exception):
    """Base class for registry contract violations."""


class DuplicateNameError(PatternRegistryError):
    """A pattern with the same name is already registered."""


class NotFoundError(PatternRegistryError):
    """No pattern with the requested name is registered."""


class BuiltinPatternError(PatternRegistryError):
    """Built-in patterns can be disabled but never removed."""


class InvalidPatternError(PatternRegistryError):
    """The supplied regular expression does not compile."""


# ---------------------------------------------------------------------------
# DetectionPattern
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectionPattern:
    """An immutable, pre-compiled detection rule.

    Attributes:
        name: Unique identifier reported as ``Detection.pattern_name``.
        regex: Pre-compiled regular expression.
        category: PII family used for risk classification.
        enabled: Disabled patterns stay registered but are never matched.
        validator: Optional total function applied to every match; a
            ``False`` result suppresses the match.
        description: Free-text description for administrators.
        examples: Sample strings the pattern is meant to catch.
        builtin: ``True`` for patterns seeded at start-up (not removable).
        severity: Optional base risk level overriding the category table.
    """

    name: str
    regex: re.Pattern  # type: ignore[type-arg]
    category: PatternCategory
    enabled: bool = True
    validator: Validator | None = None
    description: str = ""
    examples: tuple[str, ...] = ()
    builtin: bool = False
    severity: RiskLevel | None = None

    @classmethod
    def compile(
        cls,
        name: str,
        pattern: str,
        category: PatternCategory | str = PatternCategory.CUSTOM,
        *,
        flags: int = 0,
        **kwargs: object,
    ) -> "DetectionPattern":
        """Build a pattern from a raw regex string.

        Raises:
            InvalidPatternError: If *name* is empty or *pattern* does not
                compile.
        """
        if not name or not name.strip():
            raise InvalidPatternError("Pattern name must not be empty")
        try:
            compiled = re.compile(pattern, flags)
        except re.error as exc:
            raise InvalidPatternError(f"Invalid regex for pattern {name!r}: {exc}") from exc
        return cls(
            name=name,
            regex=compiled,
            category=PatternCategory(category),
            **kwargs,  # type: ignore[arg-type]
        )

    def is_valid_match(self, value: str) -> bool:
        """Apply the validator; patterns without one accept every match."""
        if self.validator is None:
            return True
        return bool(self.validator(value))


# ---------------------------------------------------------------------------
# PatternRegistry
# ---------------------------------------------------------------------------


class PatternRegistry:
    """Ordered collection of :class:`DetectionPattern` objects.

    Args:
        patterns: Initial patterns, registered in the given order.
    """

    def __init__(self, patterns: Iterable[DetectionPattern] = ()) -> None:
        self._lock = threading.Lock()
        self._patterns: tuple[DetectionPattern, ...] = ()
        for pattern in patterns:
            self.register(pattern)

    @classmethod
    def with_builtins(cls) -> "PatternRegistry":
        """Return a registry seeded with the Brazilian built-in patterns."""
        from archguard.core.patterns.br_patterns import builtin_patterns

        return cls(builtin_patterns())

    # ------------------------------------------------------------------
    # Reads (lock-free snapshots)
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._patterns)

    def __contains__(self, name: object) -> bool:
        return any(p.name == name for p in self._patterns)

    def all_patterns(self) -> tuple[DetectionPattern, ...]:
        """Every registered pattern, enabled or not, in registration order."""
        return self._patterns

    def active_patterns(self) -> tuple[DetectionPattern, ...]:
        """Enabled patterns in registration order."""
        return tuple(p for p in self._patterns if p.enabled)

    def get(self, name: str) -> DetectionPattern:
        for pattern in self._patterns:
            if pattern.name == name:
                return pattern
        raise NotFoundError(f"Pattern not found: {name!r}")

    def index_of(self, name: str) -> int:
        """Registration index of *name*; used as a stable sort key."""
        for i, pattern in enumerate(self._patterns):
            if pattern.name == name:
                return i
        raise NotFoundError(f"Pattern not found: {name!r}")

    # ------------------------------------------------------------------
    # Mutations (serialised)
    # ------------------------------------------------------------------

    def register(self, pattern: DetectionPattern) -> DetectionPattern:
        """Append *pattern* to the registry.

        Raises:
            DuplicateNameError: If a pattern with the same name exists.
        """
        with self._lock:
            if any(p.name == pattern.name for p in self._patterns):
                raise DuplicateNameError(f"Pattern already registered: {pattern.name!r}")
            self._patterns = self._patterns + (pattern,)
        logger.debug(
            "Pattern registered name=%s category=%s builtin=%s enabled=%s",
            pattern.name,
            pattern.category.value,
            pattern.builtin,
            pattern.enabled,
        )
        return pattern

    def add_custom(
        self,
        name: str,
        pattern: str,
        category: PatternCategory | str = PatternCategory.CUSTOM,
        *,
        description: str = "",
        severity: RiskLevel | str | None = None,
        enabled: bool = True,
        flags: int = re.IGNORECASE,
    ) -> DetectionPattern:
        """Compile and register a runtime (removable) pattern."""
        compiled = DetectionPattern.compile(
            name,
            pattern,
            category,
            flags=flags,
            description=description,
            severity=RiskLevel(severity) if severity is not None else None,
            enabled=enabled,
            builtin=False,
        )
        return self.register(compiled)

    def set_enabled(self, name: str, enabled: bool) -> DetectionPattern:
        """Enable or disable *name* without re-registering it.

        Raises:
            NotFoundError: If no pattern with that name is registered.
        """
        with self._lock:
            patterns = list(self._patterns)
            for i, pattern in enumerate(patterns):
                if pattern.name == name:
                    updated = dataclasses.replace(pattern, enabled=enabled)
                    patterns[i] = updated
                    self._patterns = tuple(patterns)
                    break
            else:
                raise NotFoundError(f"Pattern not found: {name!r}")
        logger.info("Pattern %s name=%s", "enabled" if enabled else "disabled", name)
        return updated

    def remove(self, name: str) -> DetectionPattern:
        """Remove a custom pattern.

        Raises:
            NotFoundError: If no pattern with that name is registered.
            BuiltinPatternError: If *name* is a built-in pattern.
        """
        with self._lock:
            for pattern in self._patterns:
                if pattern.name == name:
                    if pattern.builtin:
                        raise BuiltinPatternError(
                            f"Built-in pattern {name!r} cannot be removed; disable it instead"
                        )
                    self._patterns = tuple(p for p in self._patterns if p.name != name)
                    break
            else:
                raise NotFoundError(f"Pattern not found: {name!r}")
        logger.info("Pattern removed name=%s", name)
        return pattern


def preview_matches(pattern: str, text: str) -> list[tuple[str, int]]:
    """Run an uncommitted regex over *text* and return ``(match, index)`` pairs.

    Used by administrators to try a pattern before adding it.  Matching is
    case-insensitive, like custom patterns.

    Raises:
        InvalidPatternError: If *pattern* does not compile.
    """
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise InvalidPatternError(f"Invalid regex: {exc}") from exc
    return [(m.group(), m.start()) for m in regex.finditer(text)]
