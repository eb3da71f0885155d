from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from ..db.store import EmployerStore
from ..excel.reader import read_sheet_rows
from ..logging.error_log import ErrorLogBuffer
from ..models.candidate import Candidate
from ..models.employer import ExistingEmployer
from ..models.reconcile_result import PreviewSummary, ReconcileResult
from .matcher import match_candidates, summarize
from .reconciler import CommitPlan, ProgressCallback, ReconcileOptions, reconcile
from .reconciler import plan_commit as plan_candidates
from .row_parser import parse_rows

"""Import session: sheet -> preview -> reconcile.

ImportSession is a plain value. parse / match / plan_commit are pure
transitions; apply() is the single step that talks to the store for writing.
preview() and apply() both re-read the employer snapshot from the store.
"""

__all__ = [
    "ImportSession",
    "parse",
    "match",
    "plan_commit",
    "preview",
    "preview_file",
    "apply",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportSession:
    """Review state of one tenant's import (what the operator is looking at)."""
    tenant_id: str
    candidates: list[Candidate] = field(default_factory=list)
    source_name: str | None = None
    dry_run: bool = True
    resolve_conflicts: bool = False
    last_result: ReconcileResult | None = None

    @property
    def summary(self) -> PreviewSummary:
        return summarize(self.candidates)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "source_name": self.source_name,
            "dry_run": self.dry_run,
            "resolve_conflicts": self.resolve_conflicts,
            "candidates": [c.to_dict() for c in self.candidates],
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ImportSession:
        last = data.get("last_result")
        return ImportSession(
            tenant_id=data["tenant_id"],
            source_name=data.get("source_name"),
            dry_run=bool(data.get("dry_run", True)),
            resolve_conflicts=bool(data.get("resolve_conflicts", False)),
            candidates=[Candidate.from_dict(c) for c in data.get("candidates") or []],
            last_result=ReconcileResult.from_dict(last) if last else None,
        )


def parse(rows: list[tuple[int, Mapping[Any, Any]]]) -> list[Candidate]:
    """Raw (row_number, row) pairs -> validated candidates."""
    return parse_rows(rows)


def match(candidates: Iterable[Candidate], snapshot: Iterable[ExistingEmployer]) -> list[Candidate]:
    """Classify candidates against one employer snapshot."""
    return match_candidates(candidates, snapshot)


def plan_commit(session: ImportSession) -> CommitPlan:
    """What a run with the session's current flags would touch."""
    return plan_candidates(session.candidates, session.resolve_conflicts)


def preview(
    tenant_id: str,
    rows: list[tuple[int, Mapping[Any, Any]]],
    store: EmployerStore,
    *,
    source_name: str | None = None,
) -> ImportSession:
    snapshot = store.select_employers(tenant_id)
    candidates = match(parse(rows), snapshot)
    session = ImportSession(tenant_id=tenant_id, candidates=candidates, source_name=source_name)
    s = session.summary
    logger.info(
        "preview source=%s rows=%d to_create=%d to_update=%d conflict=%d invalid=%d",
        source_name,
        s.rows,
        s.to_create,
        s.to_update,
        s.conflict,
        s.invalid,
    )
    return session


def preview_file(tenant_id: str, path: Path, store: EmployerStore) -> ImportSession:
    header_index, rows = read_sheet_rows(path)
    logger.debug("file=%s header_row=%d data_rows=%d", path.name, header_index + 1, len(rows))
    return preview(tenant_id, rows, store, source_name=path.name)


def apply(
    session: ImportSession,
    store: EmployerStore,
    *,
    dry_run: bool | None = None,
    resolve_conflicts: bool | None = None,
    batch_size: int | None = None,
    error_log: ErrorLogBuffer | None = None,
    progress_callback: ProgressCallback | None = None,
) -> ImportSession:
    """Run the reconciler for the session and return the updated session.

    A commit run that finishes with zero errors clears the candidate list so
    the next look at the session starts fresh; otherwise candidates stay for
    inspection and retry.
    """
    session = replace(
        session,
        dry_run=session.dry_run if dry_run is None else dry_run,
        resolve_conflicts=session.resolve_conflicts if resolve_conflicts is None else resolve_conflicts,
    )
    options = ReconcileOptions(dry_run=session.dry_run, resolve_conflicts=session.resolve_conflicts)
    if batch_size is not None:
        options = replace(options, batch_size=batch_size)

    result = reconcile(
        session.candidates,
        store,
        session.tenant_id,
        options,
        error_log=error_log,
        progress_callback=progress_callback,
    )
    candidates = session.candidates
    if not session.dry_run and result.ok:
        candidates = []
    return replace(session, candidates=candidates, last_result=result)
