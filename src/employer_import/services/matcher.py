from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

from ..models.candidate import Candidate, ConflictInfo, Disposition
from ..models.employer import ExistingEmployer
from ..models.reconcile_result import PreviewSummary
from .normalizer import format_secondary_key, normalize_tax_id

"""Matcher: classify candidates against an employer snapshot.

Tax id is the identity; the secondary key is a dependent attribute that may
have to move. A candidate is a conflict only when the key it wants is held by
some *other* employer.
"""

__all__ = [
    "SnapshotIndex",
    "build_index",
    "classify",
    "match_candidates",
    "summarize",
]


@dataclass(frozen=True)
class SnapshotIndex:
    """Lookup tables built once per snapshot (both 1:1 within a tenant)."""
    by_tax_id: dict[str, ExistingEmployer]
    by_secondary_key: dict[str, ExistingEmployer]


def build_index(existing: Iterable[ExistingEmployer]) -> SnapshotIndex:
    by_tax_id: dict[str, ExistingEmployer] = {}
    by_secondary_key: dict[str, ExistingEmployer] = {}
    for emp in existing:
        tax_id = normalize_tax_id(emp.tax_id)
        if tax_id:
            by_tax_id[tax_id] = emp
        if emp.secondary_key:
            by_secondary_key[format_secondary_key(emp.secondary_key)] = emp
    return SnapshotIndex(by_tax_id=by_tax_id, by_secondary_key=by_secondary_key)


def _conflict_message(target_key: str, occupant: ExistingEmployer) -> str:
    return (
        f"Matrícula {target_key} já pertence a {occupant.name} "
        f"(CNPJ {normalize_tax_id(occupant.tax_id)})"
    )


def _conflict(candidate: Candidate, target_key: str, occupant: ExistingEmployer, existing: ExistingEmployer | None) -> Candidate:
    info = ConflictInfo(
        occupant_id=occupant.id,
        occupant_name=occupant.name,
        occupant_tax_id=normalize_tax_id(occupant.tax_id),
        target_secondary_key=target_key,
    )
    return replace(
        candidate,
        disposition=Disposition.CONFLICT,
        conflict_info=info,
        errors=[*candidate.errors, _conflict_message(target_key, occupant)],
        existing_id=existing.id if existing else None,
        existing_secondary_key=existing.secondary_key if existing else None,
    )


def classify(candidate: Candidate, index: SnapshotIndex) -> Candidate:
    """Assign the disposition of one candidate. INVALID rows pass through untouched."""
    if candidate.disposition is Disposition.INVALID:
        return candidate

    target_key = candidate.target_key
    existing = index.by_tax_id.get(candidate.tax_id)
    occupant = index.by_secondary_key.get(target_key)

    if existing is not None:
        if occupant is not None and occupant.id != existing.id:
            return _conflict(candidate, target_key, occupant, existing)
        changes = list(candidate.changes)
        if existing.secondary_key != target_key:
            changes.append(f"Matrícula: {existing.secondary_key or '(vazio)'} → {target_key}")
        return replace(
            candidate,
            disposition=Disposition.TO_UPDATE,
            existing_id=existing.id,
            existing_secondary_key=existing.secondary_key,
            changes=changes,
        )

    if occupant is not None:
        return _conflict(candidate, target_key, occupant, None)
    return replace(candidate, disposition=Disposition.TO_CREATE)


def match_candidates(candidates: Iterable[Candidate], existing: Iterable[ExistingEmployer]) -> list[Candidate]:
    """Classify every candidate against one snapshot."""
    index = build_index(existing)
    return [classify(c, index) for c in candidates]


def summarize(candidates: Iterable[Candidate]) -> PreviewSummary:
    counts: dict[Any, int] = {d: 0 for d in Disposition}
    rows = 0
    for c in candidates:
        rows += 1
        counts[c.disposition or Disposition.INVALID] += 1
    return PreviewSummary(
        rows=rows,
        to_create=counts[Disposition.TO_CREATE],
        to_update=counts[Disposition.TO_UPDATE],
        conflict=counts[Disposition.CONFLICT],
        invalid=counts[Disposition.INVALID],
    )
