"""Checksum and structural validators for Brazilian PII candidates.

Every validator takes the raw matched substring and returns ``True`` or
``False``.  They are pure and total: formatting characters are stripped
internally and any input, including the empty string, yields a boolean.

The digit-based validators follow the official check-digit rules published
by the Receita Federal (CPF, CNPJ), Caixa (PIS/PASEP) and the TSE (voter ID).
"""

from __future__ import annotations

import re

_NON_DIGIT_RE = re.compile(r"\D")

# A capitalised Latin word with Portuguese diacritics, e.g. "João", "Conceição".
_NAME_TOKEN_RE = re.compile(r"^[A-ZÁÉÍÓÚÂÊÔÀÃÕÇ][a-záéíóúâêôàãõç]+$")

NAME_CONNECTORS: frozenset[str] = frozenset(
    {"da", "de", "do", "dos", "das", "e", "del", "von", "van", "la", "le", "di"}
)

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(?:\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")

_CNPJ_WEIGHTS_1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_2 = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_PIS_WEIGHTS = (3, 2, 9, 8, 7, 6, 5, 4, 3, 2)

# Voter-ID state codes run from 01 (SP) to 28 (ZZ, abroad).
_VOTER_STATE_SP = 1
_VOTER_STATE_MG = 2
_VOTER_STATE_MAX = 28


def only_digits(value: str) -> str:
    """Return *value* with every non-digit character removed."""
    if not isinstance(value, str):
        return ""
    return _NON_DIGIT_RE.sub("", value)


def _mod11_digit(digits: str, weights: tuple[int, ...] | range) -> int:
    total = sum(int(d) * w for d, w in zip(digits, weights))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def _all_same(digits: str) -> bool:
    return len(set(digits)) == 1


def validate_cpf(value: str) -> bool:
    """Validate a CPF (individual taxpayer number) by its two check digits."""
    digits = only_digits(value)
    if len(digits) != 11 or _all_same(digits):
        return False
    first = _mod11_digit(digits[:9], range(10, 1, -1))
    second = _mod11_digit(digits[:10], range(11, 1, -1))
    return digits[9] == str(first) and digits[10] == str(second)


def validate_cnpj(value: str) -> bool:
    """Validate a CNPJ (corporate taxpayer number) by its two check digits."""
    digits = only_digits(value)
    if len(digits) != 14 or _all_same(digits):
        return False
    first = _mod11_digit(digits[:12], _CNPJ_WEIGHTS_1)
    second = _mod11_digit(digits[:13], _CNPJ_WEIGHTS_2)
    return digits[12] == str(first) and digits[13] == str(second)


def validate_pis(value: str) -> bool:
    """Validate a PIS/PASEP/NIT number (11 digits, one mod-11 check digit)."""
    digits = only_digits(value)
    if len(digits) != 11 or _all_same(digits):
        return False
    total = sum(int(d) * w for d, w in zip(digits[:10], _PIS_WEIGHTS))
    check = 11 - (total % 11)
    if check >= 10:
        check = 0
    return digits[10] == str(check)


def validate_voter_id(value: str) -> bool:
    """Validate a título de eleitor (12 digits: sequence, state, two check digits).

    SP and MG titles use 1 instead of 0 when the remainder is zero.
    """
    digits = only_digits(value)
    if len(digits) != 12 or _all_same(digits):
        return False

    state = int(digits[8:10])
    if not 1 <= state <= _VOTER_STATE_MAX:
        return False
    sp_or_mg = state in (_VOTER_STATE_SP, _VOTER_STATE_MG)

    def _check(remainder: int) -> int:
        if remainder == 10:
            return 0
        if remainder == 0 and sp_or_mg:
            return 1
        return remainder

    first = _check(sum(int(d) * w for d, w in zip(digits[:8], range(2, 10))) % 11)
    second = _check((int(digits[8]) * 7 + int(digits[9]) * 8 + first * 9) % 11)
    return digits[10] == str(first) and digits[11] == str(second)


def validate_brazilian_name(value: str) -> bool:
    """Accept full names such as ``"Maria da Silva"``.

    At least two tokens must remain after connector words are discarded and
    each remaining token must be a capitalised word.
    """
    if not isinstance(value, str):
        return False
    tokens = [t for t in value.split() if t.lower() not in NAME_CONNECTORS]
    if len(tokens) < 2:
        return False
    return all(_NAME_TOKEN_RE.match(t) for t in tokens)


def validate_phone(value: str) -> bool:
    """Brazilian phone numbers carry 10 to 13 digits including DDD and DDI."""
    return 10 <= len(only_digits(value)) <= 13


def validate_rg(value: str) -> bool:
    """RG numbers vary by state; accept 7 to 9 digits with an optional X check."""
    if not isinstance(value, str):
        return False
    cleaned = re.sub(r"[^\dxX]", "", value)
    return 7 <= len(cleaned) <= 9


def validate_cep(value: str) -> bool:
    digits = only_digits(value)
    return len(digits) == 8 and digits != "00000000"


def validate_email(value: str) -> bool:
    if not isinstance(value, str) or len(value) > 254:
        return False
    return _EMAIL_RE.match(value) is not None


def validate_luhn(value: str) -> bool:
    """Luhn check for 13 to 19 digit payment card numbers."""
    digits = [int(ch) for ch in only_digits(value)]
    if not 13 <= len(digits) <= 19:
        return False
    checksum = 0
    parity = len(digits) % 2
    for i, digit in enumerate(digits):
        if i % 2 == parity:
            digit *= 2
            if digit > 9:
                digit -= 9
        checksum += digit
    return checksum % 10 == 0
