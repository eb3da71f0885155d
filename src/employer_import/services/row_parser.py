from __future__ import annotations

import math
import numbers
import re
from collections.abc import Mapping
from typing import Any

from ..models.candidate import Candidate, Disposition
from .normalizer import SECONDARY_KEY_LENGTH, fold_label, normalize_tax_id, validate_tax_id

"""Row parser: raw spreadsheet row -> Candidate.

Column labels vary between exports (case, accents, underscores), so every
logical field accepts a list of synonyms compared after fold_label().
Validation rules are independent; any failure fixes the disposition to INVALID.
"""

__all__ = [
    "FIELD_SYNONYMS",
    "MSG_ID_MISSING",
    "MSG_ID_INVALID",
    "MSG_NAME_MISSING",
    "MSG_TAX_ID_MISSING",
    "MSG_TAX_ID_INVALID",
    "cell_text",
    "parse_row",
    "parse_rows",
]

MSG_ID_MISSING = "ID/Matrícula ausente"
MSG_ID_INVALID = "ID/Matrícula inválido"
MSG_NAME_MISSING = "Nome ausente"
MSG_TAX_ID_MISSING = "CNPJ ausente"
MSG_TAX_ID_INVALID = "CNPJ inválido"

FIELD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "external_id": ("ID", "Matrícula", "Matricula"),
    "name": ("Nome da Empresa", "Nome", "Razao_Social", "Razão Social"),
    "trade_name": ("Fantasia", "Nome Fantasia", "nome_fantasia"),
    "tax_id": ("CNPJ",),
    "email": ("E-mail", "Email"),
    "phone": ("Telefone", "Fone"),
    "postal_code": ("CEP",),
    "city": ("Cidade", "Município", "Municipio"),
    "state": ("UF", "Estado"),
    "neighborhood": ("Bairro",),
    "address": ("Endereço", "Endereco", "Logradouro"),
}

_FOLDED_SYNONYMS: dict[str, tuple[str, ...]] = {
    name: tuple(fold_label(s) for s in synonyms) for name, synonyms in FIELD_SYNONYMS.items()
}


def cell_text(value: Any) -> str:
    """Render a raw cell as trimmed text ("" for blanks, 123.0 -> "123")."""
    if value is None:
        return ""
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        if isinstance(value, float) and math.isnan(value):
            return ""
        if float(value).is_integer():
            return str(int(value))
    return str(value).strip()


def _resolve_columns(labels: list[Any]) -> dict[str, Any]:
    """Map logical field name -> original column label (first synonym wins)."""
    folded = {}
    for label in labels:
        folded.setdefault(fold_label(label), label)
    resolved: dict[str, Any] = {}
    for name, synonyms in _FOLDED_SYNONYMS.items():
        for synonym in synonyms:
            if synonym in folded:
                resolved[name] = folded[synonym]
                break
    return resolved


def _optional(value: Any) -> str | None:
    text = cell_text(value)
    return text or None


def parse_row(row: Mapping[Any, Any], row_number: int, columns: dict[str, Any] | None = None) -> Candidate:
    """Build a Candidate from one raw row.

    Parameters
    ----------
    row: column label -> raw cell value
    row_number: 1-based sheet row (for messages)
    columns: pre-resolved field -> label map (parse_rows resolves it once per sheet)
    """
    if columns is None:
        columns = _resolve_columns(list(row.keys()))

    def raw(name: str) -> Any:
        label = columns.get(name)
        return row.get(label) if label is not None else None

    external_id = cell_text(raw("external_id"))
    name = cell_text(raw("name"))
    raw_tax_id = raw("tax_id")
    has_tax_id = bool(cell_text(raw_tax_id))
    tax_id = normalize_tax_id(raw_tax_id) if has_tax_id else ""

    errors: list[str] = []
    if not external_id:
        errors.append(MSG_ID_MISSING)
    else:
        digits = re.sub(r"\D", "", external_id)
        if not digits or len(digits) > SECONDARY_KEY_LENGTH:
            errors.append(MSG_ID_INVALID)
    if not name:
        errors.append(MSG_NAME_MISSING)
    if not has_tax_id:
        errors.append(MSG_TAX_ID_MISSING)
    elif not validate_tax_id(tax_id):
        errors.append(MSG_TAX_ID_INVALID)

    return Candidate(
        row_number=row_number,
        external_id=external_id,
        name=name,
        tax_id=tax_id,
        trade_name=_optional(raw("trade_name")),
        email=_optional(raw("email")),
        phone=_optional(raw("phone")),
        postal_code=_optional(raw("postal_code")),
        city=_optional(raw("city")),
        state=_optional(raw("state")),
        neighborhood=_optional(raw("neighborhood")),
        address=_optional(raw("address")),
        errors=errors,
        disposition=Disposition.INVALID if errors else None,
    )


def parse_rows(rows: list[tuple[int, Mapping[Any, Any]]]) -> list[Candidate]:
    """Parse (row_number, row) pairs sharing one header."""
    if not rows:
        return []
    columns = _resolve_columns(list(rows[0][1].keys()))
    return [parse_row(row, row_number, columns) for row_number, row in rows]
