from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for the reconcile error log.

Every store failure the reconciler classifies is recorded here and written as
one JSON line by ErrorLogBuffer. row=-1 is a sentinel for run-level errors
(session expiry, duplicate secondary keys found by the post-commit check).
"""

__all__ = [
    "ErrorRecord",
]


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        tenant: Tenant (clinic) id the run belongs to
        row: Sheet row number (1-based). -1 for run-level errors
        employer: Employer name as read from the sheet ("" for run-level errors)
        error_type: Error classification in UPPER_SNAKE_CASE format
        message: Store error message or description
    """
    timestamp: str  # ISO8601 UTC
    tenant: str
    row: int  # 行番号。不明な場合 -1 許容
    employer: str
    error_type: str  # UPPER_SNAKE
    message: str

    @staticmethod
    def create(tenant: str, row: int, employer: str, error_type: str, message: str) -> ErrorRecord:
        """Create a new ErrorRecord stamped with the current UTC time."""
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            tenant=tenant,
            row=row,
            employer=employer,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        """Serialize to a single JSON line (no extra keys)."""
        return json.dumps(asdict(self), ensure_ascii=False)
