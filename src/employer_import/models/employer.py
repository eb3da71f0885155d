from __future__ import annotations

from dataclasses import dataclass
from typing import Any

"""ExistingEmployer snapshot model.

A read-only view of one persisted employer, fetched once per preview and once
per reconcile run. Only the columns needed for matching are carried.
"""

__all__ = [
    "ExistingEmployer",
]


@dataclass(frozen=True)
class ExistingEmployer:
    """Snapshot of a persisted employer record.

    Attributes:
        id: Opaque persisted identity (uuid / serial, store dependent)
        tax_id: Canonical 14-digit CNPJ
        secondary_key: 6-digit registration number, unique per tenant (may be None)
        name: Company name for operator-facing messages
    """
    id: Any
    tax_id: str
    secondary_key: str | None
    name: str
