from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest

from employer_import.db.memory import InMemoryEmployerStore
from employer_import.db.store import StoreError, StoreErrorKind
from employer_import.logging.error_log import ErrorLogBuffer
from employer_import.models.candidate import Candidate, Disposition
from employer_import.services.matcher import match_candidates
from employer_import.services.reconciler import ReconcileOptions, WorkingMap, plan_commit, reconcile

T = "clinic-1"
A = "11222333000181"
B = "33000167000101"
C = "60701190000104"
D = "00400000000189"


def _cand(row: int, ext: str, tax: str, name: str = "Empresa", **fields: Any) -> Candidate:
    return Candidate(row_number=row, external_id=ext, name=name, tax_id=tax, **fields)


def _matched(store: InMemoryEmployerStore, *cands: Candidate) -> list[Candidate]:
    return match_candidates(cands, store.select_employers(T))


class FailingStore(InMemoryEmployerStore):
    """Memory store whose writes fail with a configured error for given tax ids."""

    def __init__(self, failures: dict[str, StoreError]) -> None:
        super().__init__()
        self.failures = failures

    def insert_employer(self, tenant_id, values):
        err = self.failures.get(values.get("tax_id"))
        if err is not None:
            raise err
        return super().insert_employer(tenant_id, values)


def test_plan_commit_selection():
    cands = [
        replace(_cand(2, "1", A), disposition=Disposition.TO_CREATE),
        replace(_cand(3, "2", B), disposition=Disposition.CONFLICT),
        replace(_cand(4, "", ""), disposition=Disposition.INVALID),
    ]
    plan = plan_commit(cands, resolve_conflicts=False)
    assert [c.row_number for c in plan.selected] == [2]
    assert len(plan.skipped) == 2
    plan = plan_commit(cands, resolve_conflicts=True)
    assert [c.row_number for c in plan.selected] == [2, 3]
    assert len(plan.skipped) == 1


def test_working_map_release_and_claim():
    wm = WorkingMap([])
    wm.claim("000001", "a")
    assert wm.holder("000001") == "a"
    assert wm.release("000001", exclude_id="a") == 0
    assert wm.release("000001") == 1
    assert wm.holder("000001") is None
    wm.claim("000002", "a")
    wm.claim("000003", "a")
    # 同じ holder は 1 つの登録番号しか持たない
    assert wm.holder("000002") is None
    assert wm.holder("000003") == "a"


def test_commit_creates_and_updates(store: InMemoryEmployerStore):
    e1 = store.seed(T, A, "Empresa A", "000005", email="old@a.com")
    cands = _matched(store, _cand(2, "5", A, email="new@a.com"), _cand(3, "20", C, name="Nova"))
    result = reconcile(cands, store, T, ReconcileOptions(dry_run=False))
    assert (result.created, result.updated, result.errors) == (1, 1, 0)
    assert store.get(e1)["email"] == "new@a.com"
    created = store.find_by_tax_id(T, C)
    assert created is not None and created.secondary_key == "000020"


def test_partial_fill_never_erases(store: InMemoryEmployerStore):
    e1 = store.seed(T, A, "Empresa A", "000005", email="keep@a.com", phone="1111", city="Recife")
    cands = _matched(store, _cand(2, "5", A, phone="2222"))
    reconcile(cands, store, T, ReconcileOptions(dry_run=False))
    rec = store.get(e1)
    assert rec["email"] == "keep@a.com"
    assert rec["city"] == "Recife"
    assert rec["phone"] == "2222"


def test_conflict_skipped_without_resolve(store: InMemoryEmployerStore):
    store.seed(T, B, "Empresa B", "000010")
    cands = _matched(store, _cand(2, "10", C))
    result = reconcile(cands, store, T, ReconcileOptions(dry_run=False))
    assert result.total == 0
    assert result.skipped == 1
    assert store.find_by_tax_id(T, C) is None


def test_conflict_resolved_reallocates_key(store: InMemoryEmployerStore):
    e2 = store.seed(T, B, "Empresa B", "000010")
    cands = _matched(store, _cand(2, "10", C, name="Nova"))
    result = reconcile(cands, store, T, ReconcileOptions(dry_run=False, resolve_conflicts=True))
    assert (result.created, result.reallocated, result.errors) == (1, 1, 0)
    assert store.get(e2)["secondary_key"] is None
    assert store.find_by_tax_id(T, C).secondary_key == "000010"


def test_simulate_does_not_write_and_matches_commit():
    def build() -> tuple[InMemoryEmployerStore, list[Candidate]]:
        s = InMemoryEmployerStore()
        s.seed(T, A, "Empresa A", "000005")
        s.seed(T, B, "Empresa B", "000010")
        cands = _matched(
            s,
            _cand(2, "5", A),
            _cand(3, "10", C, name="Nova"),
            _cand(4, "6", D, name="Outra"),
            _cand(5, "6", A),  # 000006 は行 4 が取得済 -> unique
        )
        return s, cands

    sim_store, cands = build()
    before = {k: dict(v) for k, v in sim_store.records.items()}
    sim = reconcile(cands, sim_store, T, ReconcileOptions(dry_run=True))
    assert sim_store.records == before

    com_store, cands = build()
    com = reconcile(cands, com_store, T, ReconcileOptions(dry_run=False))
    for field in ("created", "updated", "reallocated", "errors", "processed", "total", "skipped"):
        assert getattr(sim, field) == getattr(com, field), field
    assert sim.dry_run is True and com.dry_run is False
    assert len(com.unique_errors) == 1


def test_duplicate_tax_id_fallback_counts_as_update(store: InMemoryEmployerStore):
    # snapshot にない (matcher 後に他者が作成した) CNPJ
    cands = _matched(store, _cand(2, "8", C, name="Nova", email="x@c.com"))
    existing = store.seed(T, C, "Já existe", "000099")
    result = reconcile(cands, store, T, ReconcileOptions(dry_run=False))
    assert (result.created, result.updated, result.errors) == (0, 1, 0)
    rec = store.get(existing)
    assert rec["secondary_key"] == "000008"
    assert rec["email"] == "x@c.com"
    assert len(store.records) == 1


def test_inactive_tax_id_counts_as_update_in_both_modes():
    # 非アクティブは snapshot に出ないので matcher は TO_CREATE にする
    counts = {}
    for dry_run in (True, False):
        s = InMemoryEmployerStore()
        inactive = s.seed(T, C, "Inativa", None, is_active=False)
        cands = _matched(s, _cand(2, "7", C, name="Reativada"))
        assert cands[0].disposition is Disposition.TO_CREATE
        result = reconcile(cands, s, T, ReconcileOptions(dry_run=dry_run))
        counts[dry_run] = (result.created, result.updated, result.errors)
        if not dry_run:
            assert len(s.records) == 1
            assert s.get(inactive)["secondary_key"] == "000007"
    assert counts[True] == counts[False] == (0, 1, 0)


def test_select_tax_ids_seeds_working_map_with_inactive_records(store: InMemoryEmployerStore):
    active = store.seed(T, A, "Ativa", "000001")
    inactive = store.seed(T, C, "Inativa", "000002", is_active=False)
    wm = WorkingMap(store.select_employers(T), store.select_tax_ids(T))
    assert wm.holder_by_tax_id == {A: active, C: inactive}
    # 非アクティブの登録番号は一意制約の対象外
    assert wm.holder("000002") is None


def test_same_tax_id_twice_in_one_run_falls_back_in_both_modes():
    for dry_run in (True, False):
        s = InMemoryEmployerStore()
        cands = _matched(s, _cand(2, "1", C, name="N"), _cand(3, "2", C, name="N"))
        result = reconcile(cands, s, T, ReconcileOptions(dry_run=dry_run))
        assert (result.created, result.updated, result.errors) == (1, 1, 0), dry_run


def test_error_classification_and_log():
    s = FailingStore(
        {
            A: StoreError("new row violates row-level security policy for table \"employers\""),
            B: StoreError("connection reset by peer"),
        }
    )
    log = ErrorLogBuffer()
    cands = _matched(s, _cand(2, "1", A, name="RLS"), _cand(3, "2", B, name="Other"), _cand(4, "3", C, name="Ok"))
    result = reconcile(cands, s, T, ReconcileOptions(dry_run=False), error_log=log)
    assert result.created == 1
    assert result.errors == 2
    assert result.rls_errors == ["Linha 2: RLS - new row violates row-level security policy for table \"employers\""]
    assert result.other_errors == ["Linha 3: Other - connection reset by peer"]
    assert [r.error_type for r in log.records] == ["PERMISSION_DENIED", "STORE_ERROR"]
    assert [r.row for r in log.records] == [2, 3]
    assert all(r.tenant == T for r in log.records)


def test_unexpected_exception_is_counted_as_other():
    class Broken(InMemoryEmployerStore):
        def insert_employer(self, tenant_id, values):
            raise RuntimeError("boom")

    s = Broken()
    result = reconcile(_matched(s, _cand(2, "1", A)), s, T, ReconcileOptions(dry_run=False))
    assert result.errors == 1
    assert result.other_errors == ["Linha 2: Empresa - boom"]


def test_session_expiry_aborts_and_keeps_applied_rows():
    s = FailingStore({B: StoreError("JWT expired")})
    cands = _matched(s, _cand(2, "1", A), _cand(3, "2", B), _cand(4, "3", C))
    result = reconcile(cands, s, T, ReconcileOptions(dry_run=False, batch_size=1))
    assert result.session_expired is True
    assert result.ok is False
    assert result.processed == 2
    assert result.created == 1
    assert result.errors == 1
    assert s.find_by_tax_id(T, A) is not None
    assert s.find_by_tax_id(T, C) is None


def test_failed_candidate_rolls_back_its_release():
    class RejectUpdate(InMemoryEmployerStore):
        def update_employer(self, employer_id, values):
            raise StoreError("permission denied for table employers", StoreErrorKind.RLS)

    s = RejectUpdate()
    e1 = s.seed(T, A, "Empresa A", "000005")
    e2 = s.seed(T, B, "Empresa B", "000010")
    cands = _matched(s, _cand(2, "10", A))
    result = reconcile(cands, s, T, ReconcileOptions(dry_run=False, resolve_conflicts=True))
    assert result.errors == 1
    assert result.reallocated == 0
    assert s.get(e2)["secondary_key"] == "000010"
    assert s.get(e1)["secondary_key"] == "000005"


def test_progress_reported_after_each_batch(store: InMemoryEmployerStore):
    calls: list[tuple[int, int]] = []
    cands = _matched(store, *[_cand(i, str(i), tax) for i, tax in zip(range(2, 7), [A, B, C, D, "00000000000191"], strict=True)])
    reconcile(cands, store, T, ReconcileOptions(batch_size=2), progress_callback=lambda p, t: calls.append((p, t)))
    assert calls == [(2, 5), (4, 5), (5, 5)]


def test_invalid_batch_size(store: InMemoryEmployerStore):
    with pytest.raises(ValueError):
        reconcile([], store, T, ReconcileOptions(batch_size=0))


def test_empty_run(store: InMemoryEmployerStore):
    result = reconcile([], store, T, ReconcileOptions(dry_run=False))
    assert (result.total, result.processed, result.errors) == (0, 0, 0)
    assert result.ok


def test_duplicate_keys_reported_after_commit():
    class LooseStore(InMemoryEmployerStore):
        def _check_unique(self, tenant_id, values, self_id=None):
            return None

    s = LooseStore()
    s.seed(T, B, "Empresa B", "000010")
    log = ErrorLogBuffer()
    cands = _matched(s, _cand(2, "10", C))
    # resolve 無しでも CONFLICT を強制的に通す
    cands = [replace(c, disposition=Disposition.TO_CREATE) for c in cands]
    result = reconcile(cands, s, T, ReconcileOptions(dry_run=False), error_log=log)
    assert result.duplicate_keys == ["000010"]
    assert log.records[-1].error_type == "DUPLICATE_SECONDARY_KEY"
    assert log.records[-1].row == -1
