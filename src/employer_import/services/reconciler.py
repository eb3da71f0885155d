from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..db.store import EmployerStore, StoreError, StoreErrorKind
from ..logging.error_log import ErrorLogBuffer
from ..models.candidate import CONTACT_FIELDS, Candidate, Disposition
from ..models.employer import ExistingEmployer
from ..models.error_record import ErrorRecord
from ..models.reconcile_result import ReconcileResult, ResultAccumulator

"""Reconciler: apply classified candidates to the employer store.

Candidates are processed one at a time in sequential batches. Batches only
drive progress reporting; a failing candidate never blocks its siblings.

Per candidate (commit mode, inside one store transaction):
1. optional conflict resolution: clear the target key on any other active
   holder, matched by key in the store (not by what the snapshot says)
2. update (existing id known) or insert
3. a unique violation on insert re-queries by tax id and falls back to update
4. anything left is classified unique / rls / other and tallied

Simulate mode runs the same decisions against an in-memory WorkingMap built
from a fresh snapshot (tax ids from every record, inactive ones included) and
never writes to the store, so its counts match what
commit would do on the same data.
"""

__all__ = [
    "DEFAULT_BATCH_SIZE",
    "ReconcileOptions",
    "CommitPlan",
    "WorkingMap",
    "plan_commit",
    "reconcile",
]

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50

ProgressCallback = Callable[[int, int], None]

_ERROR_TYPES: dict[StoreErrorKind, str] = {
    StoreErrorKind.UNIQUE: "UNIQUE_VIOLATION",
    StoreErrorKind.RLS: "PERMISSION_DENIED",
    StoreErrorKind.SESSION_EXPIRED: "SESSION_EXPIRED",
    StoreErrorKind.OTHER: "STORE_ERROR",
}


@dataclass(frozen=True)
class ReconcileOptions:
    dry_run: bool = True
    resolve_conflicts: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE


@dataclass(frozen=True)
class CommitPlan:
    """Candidates a run will touch, and those it only reports."""
    selected: list[Candidate]
    skipped: list[Candidate]


def plan_commit(candidates: Iterable[Candidate], resolve_conflicts: bool) -> CommitPlan:
    """Select TO_CREATE / TO_UPDATE always, CONFLICT only when resolving conflicts."""
    selected: list[Candidate] = []
    skipped: list[Candidate] = []
    for c in candidates:
        if c.disposition in (Disposition.TO_CREATE, Disposition.TO_UPDATE):
            selected.append(c)
        elif c.disposition is Disposition.CONFLICT and resolve_conflicts:
            selected.append(c)
        else:
            skipped.append(c)
    return CommitPlan(selected=selected, skipped=skipped)


class WorkingMap:
    """In-memory view of who holds which secondary key during one run."""

    def __init__(self, snapshot: Iterable[ExistingEmployer], tax_ids: dict[str, Any] | None = None) -> None:
        self.holder_by_key: dict[str, Any] = {}
        self.key_by_holder: dict[Any, str] = {}
        self.holder_by_tax_id: dict[str, Any] = {}
        # 非アクティブも含む: 重複 CNPJ のフォールバックは is_active を見ない
        self.holder_by_tax_id.update(tax_ids or {})
        for emp in snapshot:
            self.holder_by_tax_id.setdefault(emp.tax_id, emp.id)
            if emp.secondary_key:
                self.holder_by_key[emp.secondary_key] = emp.id
                self.key_by_holder[emp.id] = emp.secondary_key

    def holder(self, key: str) -> Any:
        return self.holder_by_key.get(key)

    def release(self, key: str, exclude_id: Any = None) -> int:
        """Drop the key from its holder unless the holder is exclude_id. Returns freed count."""
        holder = self.holder_by_key.get(key)
        if holder is None or holder == exclude_id:
            return 0
        del self.holder_by_key[key]
        self.key_by_holder.pop(holder, None)
        return 1

    def claim(self, key: str, holder_id: Any) -> None:
        old_key = self.key_by_holder.pop(holder_id, None)
        if old_key is not None and self.holder_by_key.get(old_key) == holder_id:
            del self.holder_by_key[old_key]
        previous = self.holder_by_key.get(key)
        if previous is not None and previous != holder_id:
            self.key_by_holder.pop(previous, None)
        self.holder_by_key[key] = holder_id
        self.key_by_holder[holder_id] = key

    def register_tax_id(self, tax_id: str, holder_id: Any) -> None:
        self.holder_by_tax_id[tax_id] = holder_id


def _update_values(candidate: Candidate) -> dict[str, Any]:
    # 空欄は上書きしない (部分補完)
    return {"secondary_key": candidate.target_key, **candidate.contact_values()}


def _create_values(candidate: Candidate) -> dict[str, Any]:
    values: dict[str, Any] = {
        "name": candidate.name,
        "trade_name": candidate.trade_name,
        "tax_id": candidate.tax_id,
        "secondary_key": candidate.target_key,
    }
    for name in CONTACT_FIELDS:
        values[name] = getattr(candidate, name)
    return values


def _update_target(candidate: Candidate) -> Any:
    """Existing id when the candidate resolves to an update, else None."""
    if candidate.disposition in (Disposition.TO_UPDATE, Disposition.CONFLICT):
        return candidate.existing_id
    return None


class _Reconciler:
    def __init__(
        self,
        store: EmployerStore,
        tenant_id: str,
        options: ReconcileOptions,
        error_log: ErrorLogBuffer | None,
    ) -> None:
        self.store = store
        self.tenant_id = tenant_id
        self.options = options
        self.error_log = error_log
        self.working = WorkingMap(store.select_employers(tenant_id), store.select_tax_ids(tenant_id))

    # --- simulate ----------------------------------------------------------

    def simulate(self, candidate: Candidate) -> tuple[str, int]:
        target = candidate.target_key
        existing_id = _update_target(candidate)
        freed = 0
        if self.options.resolve_conflicts:
            freed = self.working.release(target, exclude_id=existing_id)

        outcome = "updated"
        holder_id = existing_id
        if holder_id is None:
            # 同一実行内で同じ CNPJ が既に作成済なら insert は一意制約違反 -> update にフォールバック
            holder_id = self.working.holder_by_tax_id.get(candidate.tax_id)
            if holder_id is None:
                outcome = "created"

        current = self.working.holder(target)
        if current is not None and current != holder_id:
            # 解放されなかった (resolve 無効) 登録番号への割当は一意制約違反になる
            raise StoreError(
                f"duplicate key value violates unique constraint (registration_number={target})",
                StoreErrorKind.UNIQUE,
            )
        if outcome == "created":
            holder_id = f"new:{candidate.row_number}"
            self.working.register_tax_id(candidate.tax_id, holder_id)
        self.working.claim(target, holder_id)
        return outcome, freed

    # --- commit ------------------------------------------------------------

    def commit(self, candidate: Candidate) -> tuple[str, int]:
        target = candidate.target_key
        existing_id = _update_target(candidate)
        freed = 0
        with self.store.transaction():
            if self.options.resolve_conflicts:
                freed = self.store.release_secondary_key(self.tenant_id, target, exclude_id=existing_id)
            if existing_id is not None:
                self.store.update_employer(existing_id, _update_values(candidate))
                holder_id, outcome = existing_id, "updated"
            else:
                holder_id, outcome = self._insert_or_fallback(candidate)

        if freed:
            self.working.release(target, exclude_id=existing_id)
        self.working.register_tax_id(candidate.tax_id, holder_id)
        self.working.claim(target, holder_id)
        return outcome, freed

    def _insert_or_fallback(self, candidate: Candidate) -> tuple[Any, str]:
        try:
            return self.store.insert_employer(self.tenant_id, _create_values(candidate)), "created"
        except StoreError as e:
            if e.kind is not StoreErrorKind.UNIQUE:
                raise
            found = self.store.find_by_tax_id(self.tenant_id, candidate.tax_id)
            if found is None:
                raise
            logger.warning(
                "row=%d tax_id=%s already exists (id=%s); updating instead of creating",
                candidate.row_number,
                candidate.tax_id,
                found.id,
            )
            self.store.update_employer(found.id, _update_values(candidate))
            return found.id, "updated"

    # --- errors ------------------------------------------------------------

    def record_error(self, acc: ResultAccumulator, candidate: Candidate, kind: StoreErrorKind, message: str) -> None:
        acc.errors += 1
        line = f"Linha {candidate.row_number}: {candidate.name} - {message}"
        if kind is StoreErrorKind.UNIQUE:
            acc.unique_errors.append(line)
        elif kind is StoreErrorKind.RLS:
            acc.rls_errors.append(line)
        elif kind is StoreErrorKind.OTHER:
            acc.other_errors.append(line)
        if self.error_log is not None:
            self.error_log.append(
                ErrorRecord.create(
                    tenant=self.tenant_id,
                    row=candidate.row_number,
                    employer=candidate.name,
                    error_type=_ERROR_TYPES[kind],
                    message=message,
                )
            )

    def verify_unique_keys(self, acc: ResultAccumulator) -> None:
        try:
            duplicates = self.store.find_duplicate_secondary_keys(self.tenant_id)
        except StoreError as e:
            logger.warning("duplicate secondary key check failed: %s", e.message)
            return
        if not duplicates:
            return
        acc.duplicate_keys.extend(duplicates)
        logger.warning("duplicate secondary keys after commit: %s", ", ".join(duplicates))
        if self.error_log is not None:
            self.error_log.append(
                ErrorRecord.create(
                    tenant=self.tenant_id,
                    row=-1,
                    employer="",
                    error_type="DUPLICATE_SECONDARY_KEY",
                    message=", ".join(duplicates),
                )
            )


def reconcile(
    candidates: Iterable[Candidate],
    store: EmployerStore,
    tenant_id: str,
    options: ReconcileOptions | None = None,
    *,
    error_log: ErrorLogBuffer | None = None,
    progress_callback: ProgressCallback | None = None,
) -> ReconcileResult:
    """Run the reconciler over classified candidates.

    Args:
        candidates: Output of the matcher (all dispositions; selection happens here)
        store: Employer store (only read from in simulate mode)
        tenant_id: Tenant whose employers are reconciled
        options: Mode flags and batch size
        error_log: Optional buffer receiving one ErrorRecord per failed candidate
        progress_callback: Called with (processed, total) after each batch

    Returns:
        ReconcileResult with counts and classified error lists

    Raises:
        StoreError: Only when the initial snapshot cannot be read
    """
    options = options or ReconcileOptions()
    if options.batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    start = time.perf_counter()
    plan = plan_commit(candidates, options.resolve_conflicts)
    total = len(plan.selected)
    acc = ResultAccumulator(dry_run=options.dry_run, total=total, skipped=len(plan.skipped))
    runner = _Reconciler(store, tenant_id, options, error_log)
    apply = runner.simulate if options.dry_run else runner.commit

    logger.info(
        "reconcile mode=%s tenant=%s selected=%d skipped=%d resolve_conflicts=%s",
        "simulate" if options.dry_run else "commit",
        tenant_id,
        total,
        acc.skipped,
        options.resolve_conflicts,
    )

    for batch_start in range(0, total, options.batch_size):
        batch = plan.selected[batch_start:batch_start + options.batch_size]
        for candidate in batch:
            acc.processed += 1
            try:
                outcome, freed = apply(candidate)
            except StoreError as e:
                runner.record_error(acc, candidate, e.kind, e.message)
                if e.kind is StoreErrorKind.SESSION_EXPIRED:
                    acc.session_expired = True
                    logger.error("session expired at row=%d; stopping run", candidate.row_number)
                    break
                logger.debug("row=%d store error kind=%s: %s", candidate.row_number, e.kind.value, e.message)
                continue
            except Exception as e:
                logger.debug("row=%d unexpected error", candidate.row_number, exc_info=True)
                runner.record_error(acc, candidate, StoreErrorKind.OTHER, str(e))
                continue
            acc.reallocated += freed
            if outcome == "created":
                acc.created += 1
            else:
                acc.updated += 1
        if progress_callback is not None:
            progress_callback(acc.processed, total)
        if acc.session_expired:
            break

    if not options.dry_run and not acc.session_expired and total:
        runner.verify_unique_keys(acc)

    result = acc.freeze(time.perf_counter() - start)
    logger.debug(
        "reconcile done created=%d updated=%d reallocated=%d errors=%d",
        result.created,
        result.updated,
        result.reallocated,
        result.errors,
    )
    return result
