from __future__ import annotations

import copy
import itertools
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from ..models.employer import ExistingEmployer
from .store import StoreError, StoreErrorKind

"""In-memory employer store.

Used for mock mode (no database connection) and tests. It enforces the same
constraints as the employers table: tax id unique per tenant, and secondary key
unique among a tenant's active employers. transaction() restores the previous
state when the block raises.
"""

__all__ = [
    "InMemoryEmployerStore",
]


class InMemoryEmployerStore:
    """Dict-backed EmployerStore."""

    def __init__(self) -> None:
        self.records: dict[Any, dict[str, Any]] = {}
        self._ids = itertools.count(1)

    # --- helpers -----------------------------------------------------------

    def seed(self, tenant_id: str, tax_id: str, name: str, secondary_key: str | None = None, **fields: Any) -> Any:
        """Add a record directly (no constraint checks)."""
        emp_id = f"emp-{next(self._ids)}"
        self.records[emp_id] = {
            "id": emp_id,
            "tenant_id": tenant_id,
            "tax_id": tax_id,
            "name": name,
            "secondary_key": secondary_key,
            "is_active": fields.pop("is_active", True),
            **fields,
        }
        return emp_id

    def get(self, employer_id: Any) -> dict[str, Any]:
        return self.records[employer_id]

    def _check_unique(self, tenant_id: str, values: dict[str, Any], self_id: Any = None) -> None:
        for rec in self.records.values():
            if rec["id"] == self_id or rec["tenant_id"] != tenant_id:
                continue
            if "tax_id" in values and rec["tax_id"] == values["tax_id"]:
                raise StoreError(
                    'duplicate key value violates unique constraint "employers_clinic_id_cnpj_key"',
                    StoreErrorKind.UNIQUE,
                )
            key = values.get("secondary_key")
            if key and rec["is_active"] and rec.get("secondary_key") == key:
                raise StoreError(
                    'duplicate key value violates unique constraint "employers_clinic_registration_key"',
                    StoreErrorKind.UNIQUE,
                )

    @staticmethod
    def _to_employer(rec: dict[str, Any]) -> ExistingEmployer:
        return ExistingEmployer(
            id=rec["id"],
            tax_id=rec["tax_id"],
            secondary_key=rec.get("secondary_key"),
            name=rec.get("name") or "",
        )

    # --- EmployerStore -----------------------------------------------------

    def select_employers(self, tenant_id: str) -> list[ExistingEmployer]:
        return [
            self._to_employer(r)
            for r in self.records.values()
            if r["tenant_id"] == tenant_id and r["is_active"]
        ]

    def find_by_tax_id(self, tenant_id: str, tax_id: str) -> ExistingEmployer | None:
        for rec in self.records.values():
            if rec["tenant_id"] == tenant_id and rec["tax_id"] == tax_id:
                return self._to_employer(rec)
        return None

    def select_tax_ids(self, tenant_id: str) -> dict[str, Any]:
        return {r["tax_id"]: r["id"] for r in self.records.values() if r["tenant_id"] == tenant_id}

    def insert_employer(self, tenant_id: str, values: dict[str, Any]) -> Any:
        self._check_unique(tenant_id, values)
        emp_id = f"emp-{next(self._ids)}"
        self.records[emp_id] = {"id": emp_id, "tenant_id": tenant_id, "is_active": True, **values}
        return emp_id

    def update_employer(self, employer_id: Any, values: dict[str, Any]) -> None:
        rec = self.records.get(employer_id)
        if rec is None:
            raise StoreError(f"employer not found: {employer_id}")
        self._check_unique(rec["tenant_id"], values, self_id=employer_id)
        rec.update(values)

    def release_secondary_key(self, tenant_id: str, secondary_key: str, exclude_id: Any = None) -> int:
        freed = 0
        for rec in self.records.values():
            if (
                rec["tenant_id"] == tenant_id
                and rec["is_active"]
                and rec.get("secondary_key") == secondary_key
                and rec["id"] != exclude_id
            ):
                rec["secondary_key"] = None
                freed += 1
        return freed

    def find_duplicate_secondary_keys(self, tenant_id: str) -> list[str]:
        seen: dict[str, int] = {}
        for rec in self.records.values():
            key = rec.get("secondary_key")
            if rec["tenant_id"] == tenant_id and rec["is_active"] and key:
                seen[key] = seen.get(key, 0) + 1
        return sorted(k for k, n in seen.items() if n > 1)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        saved = copy.deepcopy(self.records)
        try:
            yield
        except BaseException:
            self.records = saved
            raise
