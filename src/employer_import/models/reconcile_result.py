from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

"""Result models for preview and reconcile runs.

PreviewSummary is what the operator sees right after loading a sheet,
ReconcileResult is what a simulate/commit run produced. ResultAccumulator
collects counts while the reconciler walks the batches and freezes them at the
end.
"""

__all__ = [
    "PreviewSummary",
    "ReconcileResult",
    "ResultAccumulator",
]


@dataclass(frozen=True)
class PreviewSummary:
    """Disposition counts for one loaded sheet. The four counts sum to rows."""
    rows: int
    to_create: int
    to_update: int
    conflict: int
    invalid: int


@dataclass(frozen=True)
class ReconcileResult:
    """Aggregated outcome of one reconcile run (simulate or commit)."""
    dry_run: bool
    total: int  # 選択された候補数
    processed: int  # 処理済 (中断時は途中まで)
    created: int
    updated: int
    reallocated: int  # 他社から解放した登録番号の数 (集計とは独立)
    errors: int
    skipped: int  # 未解決コンフリクト + invalid
    unique_errors: list[str] = field(default_factory=list)
    rls_errors: list[str] = field(default_factory=list)
    other_errors: list[str] = field(default_factory=list)
    session_expired: bool = False
    duplicate_keys: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.errors == 0 and not self.session_expired

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ReconcileResult:
        return ReconcileResult(**data)


class ResultAccumulator:
    """Mutable tally used during a run; call freeze() to get a ReconcileResult."""

    def __init__(self, *, dry_run: bool, total: int, skipped: int) -> None:
        self.dry_run = dry_run
        self.total = total
        self.skipped = skipped
        self.processed = 0
        self.created = 0
        self.updated = 0
        self.reallocated = 0
        self.errors = 0
        self.unique_errors: list[str] = []
        self.rls_errors: list[str] = []
        self.other_errors: list[str] = []
        self.session_expired = False
        self.duplicate_keys: list[str] = []

    def freeze(self, elapsed_seconds: float) -> ReconcileResult:
        return ReconcileResult(
            dry_run=self.dry_run,
            total=self.total,
            processed=self.processed,
            created=self.created,
            updated=self.updated,
            reallocated=self.reallocated,
            errors=self.errors,
            skipped=self.skipped,
            unique_errors=list(self.unique_errors),
            rls_errors=list(self.rls_errors),
            other_errors=list(self.other_errors),
            session_expired=self.session_expired,
            duplicate_keys=list(self.duplicate_keys),
            elapsed_seconds=elapsed_seconds,
        )
