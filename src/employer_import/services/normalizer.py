"""Canonicalization of raw spreadsheet cell values.

Spreadsheet readers hand us CNPJs as ints, floats, scientific-notation strings
or formatted text ("11.222.333/0001-81"), and registration ids with or without
leading zeros. Everything here is pure and side-effect free.
"""

from __future__ import annotations

import math
import numbers
import re
import unicodedata
from typing import Any

__all__ = [
    "HEADER_LABELS",
    "HEADER_SCAN_ROWS",
    "TAX_ID_LENGTH",
    "SECONDARY_KEY_LENGTH",
    "fold_label",
    "normalize_tax_id",
    "format_secondary_key",
    "validate_tax_id",
    "find_header_row_index",
]

TAX_ID_LENGTH = 14
SECONDARY_KEY_LENGTH = 6
HEADER_SCAN_ROWS = 10

# ヘッダ行検出用ラベル (trim + upper 後に完全一致)
HEADER_LABELS = frozenset({
    "ID",
    "MATRICULA",
    "MATRÍCULA",
    "CNPJ",
    "NOME",
    "NOME DA EMPRESA",
    "RAZAO_SOCIAL",
    "RAZAO SOCIAL",
    "RAZÃO SOCIAL",
})

_SCIENTIFIC_RE = re.compile(r"^[+-]?\d+(?:[.,]\d+)?[eE][+-]?\d+$")
_NON_DIGIT_RE = re.compile(r"\D")


def fold_label(value: Any) -> str:
    """Lowercase, strip accents and collapse separators of a column label.

    "Razão_Social", "RAZAO SOCIAL" and " razao-social " all fold to "razao social".
    """
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"[\s_\-]+", " ", text.lower())
    return text.strip()


def _is_number(raw: Any) -> bool:
    return isinstance(raw, numbers.Real) and not isinstance(raw, bool)


def normalize_tax_id(raw: Any) -> str:
    """Return the best-effort 14-digit CNPJ string for a raw cell value.

    The result is not validated; a wrong-length string comes back as-is so the
    caller can report it.
    """
    if raw is None:
        return ""
    if _is_number(raw):
        if isinstance(raw, float) and math.isnan(raw):
            return ""
        return str(int(raw)).zfill(TAX_ID_LENGTH)
    text = str(raw).strip()
    if _SCIENTIFIC_RE.match(text):
        return str(int(float(text.replace(",", ".")))).zfill(TAX_ID_LENGTH)
    digits = _NON_DIGIT_RE.sub("", text)
    if digits and len(digits) < TAX_ID_LENGTH:
        digits = digits.zfill(TAX_ID_LENGTH)
    return digits


def format_secondary_key(raw: Any) -> str:
    """Format an external id as a 6-digit registration number.

    Longer digit strings keep their last 6 digits so the result is always
    exactly 6 characters; RowParser rejects such ids before they get here.
    """
    if _is_number(raw) and float(raw).is_integer():
        raw = int(raw)
    digits = _NON_DIGIT_RE.sub("", "" if raw is None else str(raw))
    return digits[-SECONDARY_KEY_LENGTH:].zfill(SECONDARY_KEY_LENGTH)


def _check_digit(digits: str, first_weight: int) -> int:
    total = 0
    weight = first_weight
    for ch in digits:
        total += int(ch) * weight
        weight = 9 if weight == 2 else weight - 1
    digit = 11 - (total % 11)
    return 0 if digit >= 10 else digit


def validate_tax_id(value: Any) -> bool:
    """Validate a CNPJ: 14 digits, not one repeated digit, both mod-11 check digits."""
    digits = _NON_DIGIT_RE.sub("", "" if value is None else str(value))
    if len(digits) != TAX_ID_LENGTH:
        return False
    if len(set(digits)) == 1:
        return False
    if _check_digit(digits[:12], 5) != int(digits[12]):
        return False
    return _check_digit(digits[:13], 6) == int(digits[13])


def find_header_row_index(sheet: Any) -> int:
    """Return the index of the header row within the first 10 rows (default 0).

    ``sheet`` is either a raw pandas DataFrame (read with header=None) or any
    sequence of row sequences.
    """
    if hasattr(sheet, "iloc"):
        rows = sheet.head(HEADER_SCAN_ROWS).itertuples(index=False, name=None)
    else:
        rows = list(sheet)[:HEADER_SCAN_ROWS]
    for idx, row in enumerate(rows):
        for cell in row:
            if isinstance(cell, str) and cell.strip().upper() in HEADER_LABELS:
                return idx
    return 0
