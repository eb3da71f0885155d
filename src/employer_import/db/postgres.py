from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg2

from ..models.employer import ExistingEmployer
from ..services.normalizer import normalize_tax_id
from .store import StoreError, StoreErrorKind, classify_message

"""PostgreSQL employer store (psycopg2).

Works on the `employers` table of the clinic system:

    id, clinic_id, name, trade_name, cnpj, registration_number, email, phone,
    cep, city, state, neighborhood, address, is_active, updated_at

The connection is expected in autocommit mode; transaction() issues explicit
BEGIN/COMMIT/ROLLBACK so each candidate's free + claim is atomic. Inserts run
under a savepoint so that a unique violation can be followed by the
duplicate-tax-id fallback inside the same transaction.
"""

__all__ = [
    "COLUMN_MAP",
    "PostgresEmployerStore",
]

logger = logging.getLogger(__name__)

# 論理名 -> 列名
COLUMN_MAP: dict[str, str] = {
    "name": "name",
    "trade_name": "trade_name",
    "tax_id": "cnpj",
    "secondary_key": "registration_number",
    "email": "email",
    "phone": "phone",
    "postal_code": "cep",
    "city": "city",
    "state": "state",
    "neighborhood": "neighborhood",
    "address": "address",
}

SQLSTATE_UNIQUE_VIOLATION = "23505"
SQLSTATE_INSUFFICIENT_PRIVILEGE = "42501"
SQLSTATE_CLASS_INVALID_AUTHORIZATION = "28"


def _store_error(exc: Exception) -> StoreError:
    """Wrap a psycopg2 exception, deriving the kind from SQLSTATE when present."""
    code = getattr(exc, "pgcode", None) or ""
    if code == SQLSTATE_UNIQUE_VIOLATION:
        kind = StoreErrorKind.UNIQUE
    elif code == SQLSTATE_INSUFFICIENT_PRIVILEGE:
        kind = StoreErrorKind.RLS
    elif code.startswith(SQLSTATE_CLASS_INVALID_AUTHORIZATION) or isinstance(exc, psycopg2.InterfaceError):
        # 接続断 / 認証失効は以降の行も全て失敗するので致命扱い
        kind = StoreErrorKind.SESSION_EXPIRED
    else:
        kind = classify_message(str(exc))
    return StoreError(str(exc).strip(), kind)


class PostgresEmployerStore:
    """EmployerStore backed by a psycopg2 cursor."""

    def __init__(self, cursor: Any, table: str = "employers") -> None:
        if not table.replace("_", "").isalnum():
            raise ValueError(f"invalid table name: {table!r}")
        self._cursor = cursor
        self._table = table
        self._in_transaction = False

    def _execute(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> None:
        try:
            self._cursor.execute(sql, params)
        except psycopg2.Error as e:
            raise _store_error(e) from e

    @staticmethod
    def _columns(values: dict[str, Any]) -> list[tuple[str, Any]]:
        pairs = []
        for name, value in values.items():
            if name not in COLUMN_MAP:
                raise ValueError(f"unknown employer field: {name}")
            pairs.append((COLUMN_MAP[name], value))
        return pairs

    @staticmethod
    def _to_employer(row: tuple[Any, ...]) -> ExistingEmployer:
        emp_id, cnpj, registration, name = row
        return ExistingEmployer(
            id=emp_id,
            tax_id=normalize_tax_id(cnpj or ""),
            secondary_key=registration,
            name=name or "",
        )

    def select_employers(self, tenant_id: str) -> list[ExistingEmployer]:
        self._execute(
            f"SELECT id, cnpj, registration_number, name FROM {self._table} "
            "WHERE clinic_id = %s AND is_active",
            (tenant_id,),
        )
        return [self._to_employer(r) for r in self._cursor.fetchall()]

    def find_by_tax_id(self, tenant_id: str, tax_id: str) -> ExistingEmployer | None:
        self._execute(
            f"SELECT id, cnpj, registration_number, name FROM {self._table} "
            "WHERE clinic_id = %s AND cnpj = %s LIMIT 1",
            (tenant_id, tax_id),
        )
        row = self._cursor.fetchone()
        return self._to_employer(row) if row else None

    def select_tax_ids(self, tenant_id: str) -> dict[str, Any]:
        # is_active を見ない: UNIQUE (clinic_id, cnpj) と同じ母集団
        self._execute(f"SELECT cnpj, id FROM {self._table} WHERE clinic_id = %s", (tenant_id,))
        return {normalize_tax_id(cnpj or ""): emp_id for cnpj, emp_id in self._cursor.fetchall()}

    def insert_employer(self, tenant_id: str, values: dict[str, Any]) -> Any:
        pairs = self._columns(values)
        cols = ["clinic_id", *(c for c, _ in pairs), "is_active"]
        params = [tenant_id, *(v for _, v in pairs), True]
        placeholders = ",".join(["%s"] * len(cols))
        sql = f"INSERT INTO {self._table} ({','.join(cols)}) VALUES ({placeholders}) RETURNING id"
        if not self._in_transaction:
            self._execute(sql, params)
            return self._cursor.fetchone()[0]
        self._execute("SAVEPOINT employer_insert")
        try:
            self._execute(sql, params)
            new_id = self._cursor.fetchone()[0]
        except StoreError:
            self._execute("ROLLBACK TO SAVEPOINT employer_insert")
            raise
        self._execute("RELEASE SAVEPOINT employer_insert")
        return new_id

    def update_employer(self, employer_id: Any, values: dict[str, Any]) -> None:
        pairs = self._columns(values)
        assignments = [f"{c} = %s" for c, _ in pairs] + ["updated_at = now()"]
        params = [v for _, v in pairs] + [employer_id]
        self._execute(
            f"UPDATE {self._table} SET {', '.join(assignments)} WHERE id = %s",
            params,
        )
        if self._cursor.rowcount == 0:
            raise StoreError(f"employer not found: {employer_id}", StoreErrorKind.OTHER)

    def release_secondary_key(self, tenant_id: str, secondary_key: str, exclude_id: Any = None) -> int:
        sql = (
            f"UPDATE {self._table} SET registration_number = NULL, updated_at = now() "
            "WHERE clinic_id = %s AND registration_number = %s AND is_active"
        )
        params: list[Any] = [tenant_id, secondary_key]
        if exclude_id is not None:
            sql += " AND id <> %s"
            params.append(exclude_id)
        self._execute(sql, params)
        return max(self._cursor.rowcount, 0)

    def find_duplicate_secondary_keys(self, tenant_id: str) -> list[str]:
        self._execute(
            f"SELECT registration_number FROM {self._table} "
            "WHERE clinic_id = %s AND is_active AND registration_number IS NOT NULL "
            "GROUP BY registration_number HAVING count(*) > 1 ORDER BY registration_number",
            (tenant_id,),
        )
        return [r[0] for r in self._cursor.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self._execute("BEGIN")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            try:
                self._cursor.execute("ROLLBACK")
            except psycopg2.Error:
                logger.debug("rollback failed", exc_info=True)
            raise
        else:
            self._execute("COMMIT")
        finally:
            self._in_transaction = False
