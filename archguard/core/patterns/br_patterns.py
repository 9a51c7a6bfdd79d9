"""Built-in Brazilian PII regex pattern library for ArchGuard.

This module provides the curated pattern set seeded into every
:class:`~archguard.core.patterns.registry.PatternRegistry`:

* CPF and CNPJ taxpayer numbers (checksum validated)
* RG identity card numbers
* Email addresses
* Brazilian telephone numbers
* CEP postal codes
* Brazilian full names (structurally validated)
* PIS/PASEP numbers (checksum validated)
* Título de eleitor (voter ID, checksum validated)
* Payment card numbers (Luhn validated, disabled by default)

Additional organisation-specific patterns can be supplied at startup via a JSON
config file (see :func:`load_custom_patterns`).  Custom patterns are appended to
the registry after the built-ins and can be removed at runtime.

**JSON config format** (array of objects at the root):

.. code-block:: json

    [
        {
            "name": "MATRICULA",
            "pattern": "MAT-\\\\d{6}",
            "category": "custom",
            "severity": "medium",
            "description": "Employee registration number"
        }
    ]

Valid categories: ``"document"``, ``"personal"``, ``"contact"``,
``"financial"``, ``"custom"``.  Valid severity values: ``"low"``,
``"medium"``, ``"high"``, ``"critical"`` (optional).
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Optional

from archguard.core import validators
from archguard.core.patterns.registry import (
    DetectionPattern,
    InvalidPatternError,
    PatternRegistry,
    PatternRegistryError,
)
from archguard.core.types import PatternCategory, RiskLevel

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Built-in raw pattern strings
# ---------------------------------------------------------------------------

# CPF: 11 digits printed as 000.000.000-00 or compact.
_CPF = r"\b\d{3}\.?\d{3}\.?\d{3}[-.]?\d{2}\b"

# CNPJ: 14 digits printed as 00.000.000/0000-00 or compact.
_CNPJ = r"\b\d{2}\.?\d{3}\.?\d{3}/?\d{4}[-.]?\d{2}\b"

# RG: format differs per issuing state; the common SSP layout is
# 00.000.000-0 with an optional X check character.
_RG = r"\b\d{1,2}\.?\d{3}\.?\d{3}[-.]?[0-9xX]\b"

_EMAIL = (
    r"\b"
    r"[A-Za-z0-9._%+\-]+"      # local part
    r"@"
    r"[A-Za-z0-9.\-]+"         # domain labels
    r"\.[A-Za-z]{2,}"          # TLD
    r"\b"
)

# Brazilian telephone
#   optional +55 country code, two-digit DDD (optionally in parentheses),
#   optional mobile 9 prefix, eight-digit subscriber number.
# Lookbehind instead of \b because the number may start with '+' or '('.
_BR_PHONE = (
    r"(?<![\w+])"
    r"(?:\+?55\s?)?"            # country code
    r"\(?[1-9]{2}\)?\s?"        # DDD
    r"9?[6-9]\d{3}"             # subscriber prefix (mobile ranges)
    r"[-.\s]?"
    r"\d{4}"
    r"(?!\d)"
)

# CEP: 00000-000.
_CEP = r"\b\d{5}[-.]?\d{3}\b"

# Full name: two or more capitalised words, optionally joined by connectors.
# Case-sensitive; the validator re-checks each token.
_BR_NAME = (
    r"\b(?:[A-ZÁÉÍÓÚÂÊÔÀÃÕÇ][a-záéíóúâêôàãõç]+"
    r"(?:\s+(?:da|de|do|dos|das|e|del|von|van|la|le|di))?\s+)+"
    r"[A-ZÁÉÍÓÚÂÊÔÀÃÕÇ][a-záéíóúâêôàãõç]+\b"
)

#: Built-in full-name pattern; its matches are their own titular.
FULL_NAME_PATTERN = "Nome Completo"
FULL_NAME_RE = re.compile(_BR_NAME)

_CREDIT_CARD = r"\b(?:\d{4}[-\s]?){3}\d{4}\b"

# PIS/PASEP/NIT: 000.00000.00-0.
_PIS = r"\b\d{3}\.?\d{5}\.?\d{2}[-.]?\d\b"

# Título de eleitor: 0000 0000 0000.
_VOTER_ID = r"\b\d{4}\s?\d{4}\s?\d{4}\b"

# ---------------------------------------------------------------------------
# Built-in pattern catalogue
# ---------------------------------------------------------------------------

#: Ordered (name, raw, category, validator, flags, enabled, severity, description,
#: examples) tuples.  The order determines registration order.
_BUILTIN_DEFINITIONS: list[tuple] = [
    ("CPF", _CPF, PatternCategory.DOCUMENT, validators.validate_cpf, 0, True, None,
     "Cadastro de Pessoa Física", ("123.456.789-09", "12345678909")),
    ("CNPJ", _CNPJ, PatternCategory.DOCUMENT, validators.validate_cnpj, 0, True, None,
     "Cadastro Nacional da Pessoa Jurídica", ("11.222.333/0001-81",)),
    ("RG", _RG, PatternCategory.DOCUMENT, validators.validate_rg, 0, True, None,
     "Registro Geral (carteira de identidade)", ("12.345.678-9", "12.345.678-X")),
    ("Email", _EMAIL, PatternCategory.CONTACT, validators.validate_email, re.IGNORECASE, True, None,
     "Endereço de email", ("usuario@exemplo.com.br",)),
    ("Telefone", _BR_PHONE, PatternCategory.CONTACT, validators.validate_phone, 0, True, None,
     "Telefone brasileiro", ("(11) 99999-9999", "+55 11 98765-4321")),
    ("CEP", _CEP, PatternCategory.PERSONAL, validators.validate_cep, 0, True, RiskLevel.LOW,
     "Código de Endereçamento Postal", ("01234-567",)),
    (FULL_NAME_PATTERN, _BR_NAME, PatternCategory.PERSONAL, validators.validate_brazilian_name, 0, True, None,
     "Nome próprio brasileiro completo", ("Maria da Silva", "João Silva Santos")),
    ("PIS/PASEP", _PIS, PatternCategory.DOCUMENT, validators.validate_pis, 0, True, None,
     "Programa de Integração Social / PASEP", ("120.12345.67-2",)),
    ("Título de Eleitor", _VOTER_ID, PatternCategory.DOCUMENT, validators.validate_voter_id, 0, True, None,
     "Título de eleitor", ("1234 5678 0191",)),
    ("Cartão de Crédito", _CREDIT_CARD, PatternCategory.FINANCIAL, validators.validate_luhn, 0, False, None,
     "Número de cartão de pagamento", ("4111 1111 1111 1111",)),
]

# Pre-compile once at import; registries receive fresh copies of the frozen
# dataclasses, which is free because they are immutable.
_BUILTIN_PATTERNS: tuple[DetectionPattern, ...] = tuple(
    DetectionPattern.compile(
        name,
        raw,
        category,
        flags=flags,
        validator=validator,
        enabled=enabled,
        severity=severity,
        description=description,
        examples=examples,
        builtin=True,
    )
    for name, raw, category, validator, flags, enabled, severity, description, examples
    in _BUILTIN_DEFINITIONS
)

_VALID_SEVERITIES: frozenset[str] = frozenset(level.value for level in RiskLevel)
_VALID_CATEGORIES: frozenset[str] = frozenset(c.value for c in PatternCategory)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def builtin_patterns() -> list[DetectionPattern]:
    """Return the built-in patterns in their canonical order."""
    return list(_BUILTIN_PATTERNS)


def load_custom_patterns(
    registry: PatternRegistry,
    custom_config_path: Optional[str | Path],
) -> int:
    """Register patterns from a JSON file into *registry*.

    Malformed entries (missing keys, invalid category or severity,
    un-compilable regex, duplicate name) are skipped with a warning so that
    the service can start with the valid patterns even when the config
    contains errors.

    Returns:
        Number of patterns registered.

    Note:
        This function never raises.  Filesystem and JSON errors are surfaced
        only as log messages.
    """
    if custom_config_path is None:
        return 0

    path = Path(custom_config_path)

    if not path.exists():
        logger.warning(
            "Custom pattern config not found: %s; using built-in patterns only",
            path,
        )
        return 0

    try:
        entries = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        logger.error("Cannot read custom pattern config %s: %s", path, exc)
        return 0
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON in custom pattern config %s: %s", path, exc)
        return 0

    if not isinstance(entries, list):
        logger.error(
            "Custom pattern config %s must contain a JSON array at the root (got %s)",
            path,
            type(entries).__name__,
        )
        return 0

    loaded = 0
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Custom pattern entry at index %d is not a JSON object; skipping", i)
            continue

        name = entry.get("name")
        raw_pattern = entry.get("pattern")
        category = entry.get("category", PatternCategory.CUSTOM.value)
        severity = entry.get("severity")

        if not name or not isinstance(name, str):
            logger.warning("Custom pattern entry at index %d missing valid 'name'; skipping", i)
            continue
        if not raw_pattern or not isinstance(raw_pattern, str):
            logger.warning("Custom pattern %r at index %d missing valid 'pattern'; skipping", name, i)
            continue
        if category not in _VALID_CATEGORIES:
            logger.warning(
                "Custom pattern %r has invalid category %r (must be one of %s); skipping",
                name,
                category,
                sorted(_VALID_CATEGORIES),
            )
            continue
        if severity is not None and severity not in _VALID_SEVERITIES:
            logger.warning(
                "Custom pattern %r has invalid severity %r (must be one of %s); skipping",
                name,
                severity,
                sorted(_VALID_SEVERITIES),
            )
            continue

        try:
            registry.add_custom(
                name,
                raw_pattern,
                category,
                description=str(entry.get("description", "")),
                severity=severity,
                enabled=bool(entry.get("enabled", True)),
            )
        except InvalidPatternError as exc:
            logger.error("Custom pattern %r at index %d skipped: %s", name, i, exc)
            continue
        except PatternRegistryError as exc:
            logger.warning("Custom pattern %r at index %d skipped: %s", name, i, exc)
            continue
        loaded += 1

    logger.info(
        "Loaded %d custom pattern(s) from %s (total patterns: %d)",
        loaded,
        path,
        len(registry),
    )
    return loaded
