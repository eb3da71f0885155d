#!/usr/bin/env python3
"""Sample employer sheet generator.

Generates a synthetic employer export in the layout the importer expects:
- Row 1: Title row (skipped by header detection)
- Row 2: Header row (Matrícula / Razão Social / CNPJ / contact columns)
- Row 3+: Data rows

A share of rows can be made invalid (blank name or broken CNPJ) so that a
preview exercises every disposition. CNPJs are written as numbers, the way
spreadsheet tools usually store them, so leading zeros are lost on purpose.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from employer_import.services.normalizer import validate_tax_id

HEADER = ["Matrícula", "Razão Social", "CNPJ", "E-mail", "Telefone", "CEP", "Cidade", "UF"]
CITIES = [("Recife", "PE"), ("São Paulo", "SP"), ("Belo Horizonte", "MG"), ("Curitiba", "PR"), ("Salvador", "BA")]


def _check_digit(digits: list[int], first_weight: int) -> int:
    total = 0
    weight = first_weight
    for d in digits:
        total += d * weight
        weight = 9 if weight == 2 else weight - 1
    digit = 11 - (total % 11)
    return 0 if digit >= 10 else digit


def random_tax_id(rng: np.random.Generator) -> str:
    """Random CNPJ with valid check digits (branch 0001)."""
    base = [int(d) for d in rng.integers(0, 10, 8)] + [0, 0, 0, 1]
    base.append(_check_digit(base, 5))
    base.append(_check_digit(base, 6))
    return "".join(str(d) for d in base)


def generate_rows(rows: int, invalid_ratio: float, seed: int = 42) -> list[list[Any]]:
    rng = np.random.default_rng(seed)
    out: list[list[Any]] = []
    seen: set[str] = set()
    for i in range(1, rows + 1):
        tax_id = random_tax_id(rng)
        while tax_id in seen or not validate_tax_id(tax_id):
            tax_id = random_tax_id(rng)
        seen.add(tax_id)
        city, state = CITIES[int(rng.integers(0, len(CITIES)))]
        name: Any = f"Empresa {i:05d} Ltda"
        cnpj: Any = int(tax_id)
        if rng.random() < invalid_ratio:
            if rng.random() < 0.5:
                name = None
            else:
                cnpj = int(tax_id[:-1] + str((int(tax_id[-1]) + 1) % 10))
        out.append([
            i,
            name,
            cnpj,
            f"contato{i}@empresa{i}.com.br",
            f"81 9{int(rng.integers(1000, 9999))}-{int(rng.integers(1000, 9999))}",
            f"{int(rng.integers(10000000, 99999999))}",
            city,
            state,
        ])
    return out


def create_sheet(output_path: Path, rows: int, invalid_ratio: float, title: str, seed: int) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    sheet_data: list[list[Any]] = [[title] + [""] * (len(HEADER) - 1), HEADER]
    sheet_data.extend(generate_rows(rows, invalid_ratio, seed))
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        pd.DataFrame(sheet_data).to_excel(writer, sheet_name="Empresas", header=False, index=False)
    print(f"Created sheet: {output_path}")
    print(f"  Rows: {rows} (+ title and header rows)")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate a synthetic employer sheet for preview / simulate runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s data/employers.xlsx
  %(prog)s data/big.xlsx --rows 5000 --invalid-ratio 0.05 --seed 7
        """,
    )
    parser.add_argument("output", type=Path, help="Output .xlsx path")
    parser.add_argument("--rows", type=int, default=200, help="Number of data rows (default: 200)")
    parser.add_argument("--invalid-ratio", type=float, default=0.0, help="Share of invalid rows, 0..1 (default: 0)")
    parser.add_argument("--title", default="Cadastro de empresas", help="Title for the first row")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    args = parser.parse_args()

    if args.rows <= 0:
        print("Error: --rows must be positive", file=sys.stderr)
        return 1
    if not 0.0 <= args.invalid_ratio <= 1.0:
        print("Error: --invalid-ratio must be between 0 and 1", file=sys.stderr)
        return 1
    if args.output.suffix.lower() != ".xlsx":
        print("Error: output must be an .xlsx file", file=sys.stderr)
        return 1

    create_sheet(args.output, args.rows, args.invalid_ratio, args.title, args.seed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
