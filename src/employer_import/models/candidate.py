from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from ..services.normalizer import format_secondary_key

"""Candidate domain model for the employer import.

One Candidate is produced per spreadsheet data row. RowParser fills the field
values and validation errors, Matcher assigns the final disposition. Instances
are frozen; transitions produce new instances via dataclasses.replace.
"""

__all__ = [
    "CONTACT_FIELDS",
    "ConflictInfo",
    "Candidate",
    "Disposition",
]

# 更新時に空でなければ上書きする連絡先/住所列
CONTACT_FIELDS: tuple[str, ...] = (
    "email",
    "phone",
    "postal_code",
    "city",
    "state",
    "neighborhood",
    "address",
)


class Disposition(Enum):
    """Classification of an import candidate.

    - TO_CREATE: no employer with this tax id, target key free
    - TO_UPDATE: employer with this tax id exists, target key free or already its own
    - CONFLICT: target key is held by a different employer
    - INVALID: row failed field validation (never matched, never applied)
    """
    TO_CREATE = "to_create"
    TO_UPDATE = "to_update"
    CONFLICT = "conflict"
    INVALID = "invalid"


@dataclass(frozen=True)
class ConflictInfo:
    """Who currently holds the secondary key a candidate wants to claim."""
    occupant_id: Any
    occupant_name: str
    occupant_tax_id: str
    target_secondary_key: str


@dataclass(frozen=True)
class Candidate:
    """Structured import row.

    row_number is the 1-based row in the source sheet and is only used for
    operator-facing messages.
    """
    row_number: int
    external_id: str
    name: str
    tax_id: str
    trade_name: str | None = None
    email: str | None = None
    phone: str | None = None
    postal_code: str | None = None
    city: str | None = None
    state: str | None = None
    neighborhood: str | None = None
    address: str | None = None
    errors: list[str] = field(default_factory=list)
    changes: list[str] = field(default_factory=list)
    conflict_info: ConflictInfo | None = None
    disposition: Disposition | None = None
    existing_id: Any = None
    existing_secondary_key: str | None = None

    @property
    def target_key(self) -> str:
        """Secondary key this row claims (external id formatted to 6 digits)."""
        return format_secondary_key(self.external_id)

    def contact_values(self) -> dict[str, str]:
        """Non-blank contact/address fields only (partial fill semantics)."""
        values: dict[str, str] = {}
        for name in CONTACT_FIELDS:
            value = getattr(self, name)
            if value:
                values[name] = value
        return values

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["disposition"] = self.disposition.value if self.disposition else None
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Candidate:
        values = dict(data)
        conflict = values.get("conflict_info")
        values["conflict_info"] = ConflictInfo(**conflict) if conflict else None
        disposition = values.get("disposition")
        values["disposition"] = Disposition(disposition) if disposition else None
        values["errors"] = list(values.get("errors") or [])
        values["changes"] = list(values.get("changes") or [])
        return Candidate(**values)
