from __future__ import annotations

from typing import Any

import psycopg2
import pytest

from employer_import.db.postgres import PostgresEmployerStore, _store_error
from employer_import.db.store import StoreError, StoreErrorKind


class UniqueViolation(psycopg2.Error):
    pgcode = "23505"


class InsufficientPrivilege(psycopg2.Error):
    pgcode = "42501"


class InvalidAuthorization(psycopg2.Error):
    pgcode = "28000"


class DummyCursor:
    """Records executed statements; raises for statements matching `fail_on`."""

    def __init__(self, rows: list[tuple[Any, ...]] | None = None, fail_on: dict[str, Exception] | None = None):
        self.executed: list[tuple[str, Any]] = []
        self.rows = rows or []
        self.fail_on = fail_on or {}
        self.rowcount = 0

    def execute(self, sql: str, params: Any = ()) -> None:
        self.executed.append((sql, params))
        for marker, exc in self.fail_on.items():
            if sql.startswith(marker):
                raise exc

    def fetchall(self):
        return list(self.rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    @property
    def statements(self) -> list[str]:
        return [s for s, _ in self.executed]


def test_rejects_bad_table_name():
    with pytest.raises(ValueError):
        PostgresEmployerStore(DummyCursor(), table="employers; drop table x")


def test_select_employers_maps_columns_and_normalizes_tax_id():
    cur = DummyCursor(rows=[("id-1", "11.222.333/0001-81", "000005", "Empresa A"), ("id-2", None, None, None)])
    store = PostgresEmployerStore(cur)
    emps = store.select_employers("clinic-1")
    assert emps[0].tax_id == "11222333000181"
    assert emps[0].secondary_key == "000005"
    assert emps[1].tax_id == "" and emps[1].name == ""
    sql, params = cur.executed[0]
    assert "clinic_id = %s AND is_active" in sql
    assert params == ("clinic-1",)


def test_insert_outside_transaction_returns_id():
    cur = DummyCursor(rows=[("new-id",)])
    store = PostgresEmployerStore(cur)
    new_id = store.insert_employer("clinic-1", {"name": "A", "tax_id": "11222333000181", "secondary_key": "000001"})
    assert new_id == "new-id"
    sql, params = cur.executed[0]
    assert sql.startswith("INSERT INTO employers (clinic_id,name,cnpj,registration_number,is_active)")
    assert params == ["clinic-1", "A", "11222333000181", "000001", True]


def test_insert_unknown_field_raises():
    store = PostgresEmployerStore(DummyCursor(rows=[("x",)]))
    with pytest.raises(ValueError):
        store.insert_employer("clinic-1", {"nope": 1})


def test_insert_in_transaction_uses_savepoint_and_rolls_back_on_unique():
    cur = DummyCursor(fail_on={"INSERT": UniqueViolation("duplicate key value")})
    store = PostgresEmployerStore(cur)
    with pytest.raises(StoreError) as ei:
        with store.transaction():
            store.insert_employer("clinic-1", {"tax_id": "11222333000181"})
    assert ei.value.kind is StoreErrorKind.UNIQUE
    assert cur.statements[0] == "BEGIN"
    assert cur.statements[1] == "SAVEPOINT employer_insert"
    assert cur.statements[3] == "ROLLBACK TO SAVEPOINT employer_insert"
    assert cur.statements[-1] == "ROLLBACK"


def test_transaction_commits():
    cur = DummyCursor()
    cur.rowcount = 1
    store = PostgresEmployerStore(cur)
    with store.transaction():
        store.update_employer("id-1", {"email": "a@b.c"})
    assert cur.statements[0] == "BEGIN"
    assert cur.statements[1].startswith("UPDATE employers SET email = %s, updated_at = now() WHERE id = %s")
    assert cur.statements[-1] == "COMMIT"


def test_update_missing_employer_raises_and_rolls_back():
    cur = DummyCursor()  # rowcount 0: 対象行なし
    store = PostgresEmployerStore(cur)
    with pytest.raises(StoreError) as ei:
        with store.transaction():
            store.update_employer("gone-id", {"email": "a@b.c"})
    assert ei.value.message == "employer not found: gone-id"
    assert ei.value.kind is StoreErrorKind.OTHER
    assert cur.statements[-1] == "ROLLBACK"


def test_select_tax_ids_ignores_is_active():
    cur = DummyCursor(rows=[("11.222.333/0001-81", "id-1"), ("60701190000104", "id-2")])
    store = PostgresEmployerStore(cur)
    assert store.select_tax_ids("clinic-1") == {"11222333000181": "id-1", "60701190000104": "id-2"}
    sql, params = cur.executed[0]
    assert "is_active" not in sql
    assert params == ("clinic-1",)


def test_release_secondary_key_excludes_and_counts():
    cur = DummyCursor()
    cur.rowcount = 1
    store = PostgresEmployerStore(cur)
    assert store.release_secondary_key("clinic-1", "000010", exclude_id="id-1") == 1
    sql, params = cur.executed[0]
    assert sql.endswith("AND id <> %s")
    assert params == ["clinic-1", "000010", "id-1"]


def test_find_duplicate_secondary_keys():
    cur = DummyCursor(rows=[("000010",)])
    store = PostgresEmployerStore(cur)
    assert store.find_duplicate_secondary_keys("clinic-1") == ["000010"]


@pytest.mark.parametrize(
    "exc, kind",
    [
        (UniqueViolation("x"), StoreErrorKind.UNIQUE),
        (InsufficientPrivilege("x"), StoreErrorKind.RLS),
        (InvalidAuthorization("x"), StoreErrorKind.SESSION_EXPIRED),
        (psycopg2.InterfaceError("connection already closed"), StoreErrorKind.SESSION_EXPIRED),
        (psycopg2.Error("JWT expired"), StoreErrorKind.SESSION_EXPIRED),
        (psycopg2.Error("something else"), StoreErrorKind.OTHER),
    ],
)
def test_store_error_kind_from_sqlstate(exc, kind):
    assert _store_error(exc).kind is kind


def test_execute_wraps_driver_errors():
    cur = DummyCursor(fail_on={"SELECT": InsufficientPrivilege("permission denied for table employers")})
    store = PostgresEmployerStore(cur)
    with pytest.raises(StoreError) as ei:
        store.select_employers("clinic-1")
    assert ei.value.kind is StoreErrorKind.RLS
    assert "permission denied" in ei.value.message
