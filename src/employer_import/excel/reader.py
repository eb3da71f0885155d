from __future__ import annotations

from pathlib import Path
from typing import Any

import pandas as pd

from ..services.normalizer import find_header_row_index

"""Spreadsheet reader for employer exports.

- Only the first worksheet is read (.xlsx via openpyxl, .xls via xlrd)
- The sheet is read without a header; the header row is auto-detected within
  the first 10 rows
- Empty cells become "" and numeric cells stay numeric, so the normalizer can
  recover CNPJs that the spreadsheet stored as numbers
"""

__all__ = [
    "SUPPORTED_SUFFIXES",
    "SheetReadError",
    "read_first_sheet",
    "sheet_rows",
    "read_sheet_rows",
]

SUPPORTED_SUFFIXES = {".xlsx": "openpyxl", ".xls": "xlrd"}


class SheetReadError(Exception):
    """Raised when the file cannot be read as a spreadsheet."""


def read_first_sheet(path: Path) -> pd.DataFrame:
    """Read the first worksheet as a raw DataFrame (header=None)."""
    engine = SUPPORTED_SUFFIXES.get(path.suffix.lower())
    if engine is None:
        raise SheetReadError(f"unsupported file type: {path.name} (expected .xlsx or .xls)")
    if not path.exists():
        raise SheetReadError(f"file not found: {path}")
    try:
        return pd.read_excel(path, sheet_name=0, header=None, engine=engine)
    except Exception as e:
        raise SheetReadError(f"failed to read {path.name}: {e}") from e


def _is_blank(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() == ""
    return bool(pd.isna(value))


def sheet_rows(df: pd.DataFrame, header_index: int | None = None) -> list[tuple[int, dict[str, Any]]]:
    """Convert a raw sheet into (sheet_row_number, {label: value}) pairs.

    Rows after the header that are entirely blank are skipped. Columns without
    a header label are named `__col_<n>` so they never match a field synonym.
    """
    if df.empty:
        return []
    if header_index is None:
        header_index = find_header_row_index(df)

    header: list[str] = []
    for i, cell in enumerate(df.iloc[header_index].tolist()):
        header.append(f"__col_{i}" if _is_blank(cell) else str(cell).strip())

    rows: list[tuple[int, dict[str, Any]]] = []
    for pos in range(header_index + 1, len(df)):
        raw = df.iloc[pos].tolist()
        if all(_is_blank(v) for v in raw):
            continue
        row: dict[str, Any] = {}
        for col, val in zip(header, raw, strict=False):
            # 重複ラベルは最初の列を優先
            row.setdefault(col, "" if _is_blank(val) else val)
        rows.append((int(df.index[pos]) + 1, row))
    return rows


def read_sheet_rows(path: Path) -> tuple[int, list[tuple[int, dict[str, Any]]]]:
    """Read a spreadsheet file; returns (header_index, rows)."""
    df = read_first_sheet(path)
    if df.empty:
        return 0, []
    header_index = find_header_row_index(df)
    return header_index, sheet_rows(df, header_index)
