from __future__ import annotations

from contextlib import AbstractContextManager
from enum import Enum
from typing import Any, Protocol

from ..models.employer import ExistingEmployer

"""Employer store interface and structured store errors.

The reconciler only talks to the store through EmployerStore. Values passed to
insert/update use logical field names (tax_id, secondary_key, postal_code, ...);
each implementation maps them to its own columns.

Store failures surface as StoreError with a StoreErrorKind. Implementations
that know the failure kind (SQLSTATE etc.) set it directly; otherwise the kind
is derived from the message text by classify_message().
"""

__all__ = [
    "StoreErrorKind",
    "StoreError",
    "EmployerStore",
    "classify_message",
]


class StoreErrorKind(Enum):
    """Classification of a store failure.

    - UNIQUE: uniqueness constraint violated (tax id or secondary key)
    - RLS: authorization / row-level security denial
    - SESSION_EXPIRED: credentials no longer valid; aborts the whole run
    - OTHER: anything else
    """
    UNIQUE = "unique"
    RLS = "rls"
    SESSION_EXPIRED = "session_expired"
    OTHER = "other"


# 小文字化したメッセージに対する部分一致 (上から順に判定)
_MESSAGE_MARKERS: tuple[tuple[StoreErrorKind, tuple[str, ...]], ...] = (
    (StoreErrorKind.SESSION_EXPIRED, ("jwt expired", "session expired", "invalid refresh token", "not authenticated")),
    (StoreErrorKind.UNIQUE, ("duplicate key", "unique constraint", "23505")),
    (StoreErrorKind.RLS, ("row-level security", "row level security", "permission denied", "42501")),
)


def classify_message(message: str) -> StoreErrorKind:
    """Fallback classification of a store error by its message text."""
    lowered = (message or "").lower()
    for kind, markers in _MESSAGE_MARKERS:
        if any(m in lowered for m in markers):
            return kind
    return StoreErrorKind.OTHER


class StoreError(Exception):
    """Raised by EmployerStore implementations for any rejected call."""

    def __init__(self, message: str, kind: StoreErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind if kind is not None else classify_message(message)


class EmployerStore(Protocol):
    """Per-tenant employer record store consumed by the matcher and reconciler."""

    def select_employers(self, tenant_id: str) -> list[ExistingEmployer]:
        """Snapshot of the tenant's active employers."""
        ...

    def find_by_tax_id(self, tenant_id: str, tax_id: str) -> ExistingEmployer | None:
        ...

    def select_tax_ids(self, tenant_id: str) -> dict[str, Any]:
        """tax_id -> employer id over every tenant record, inactive ones included."""
        ...

    def insert_employer(self, tenant_id: str, values: dict[str, Any]) -> Any:
        """Insert an active employer and return its id."""
        ...

    def update_employer(self, employer_id: Any, values: dict[str, Any]) -> None:
        ...

    def release_secondary_key(self, tenant_id: str, secondary_key: str, exclude_id: Any = None) -> int:
        """Clear secondary_key on other active holders; return how many were freed."""
        ...

    def find_duplicate_secondary_keys(self, tenant_id: str) -> list[str]:
        ...

    def transaction(self) -> AbstractContextManager[None]:
        """Scope grouping the free + claim writes of one candidate."""
        ...
