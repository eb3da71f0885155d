from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime
from pathlib import Path

from ..models.error_record import ErrorRecord

"""Error log for one reconcile run.

The reconciler appends an ErrorRecord per failed candidate (plus row=-1
run-level records); the CLI flushes once at the end of `run`. The file is
`errors-YYYYMMDD-HHMMSS.log` (UTC) in the configured logs directory, JSON
Lines with the fixed ErrorRecord keys, and is only created when there is
something to write.
"""

__all__ = [
    "ErrorRecord",
    "ErrorLogBuffer",
]

LOGS_DIR = Path("./logs")
TIMESTAMP_FMT = "%Y%m%d-%H%M%S"


class ErrorLogBuffer:
    """Error records of one run.

    Records stay readable after flush() so counts() covers the whole run;
    each flush writes only what was appended since the previous one.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = Path(directory) if directory is not None else LOGS_DIR
        self._records: list[ErrorRecord] = []
        self._written = 0
        self._path: Path | None = None

    @property
    def path(self) -> Path | None:
        """Log file of this run, or None while nothing has been written."""
        return self._path

    @property
    def records(self) -> list[ErrorRecord]:
        return list(self._records)

    @property
    def pending(self) -> int:
        return len(self._records) - self._written

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: ErrorRecord) -> None:
        self._records.append(record)

    def counts(self) -> dict[str, int]:
        """error_type -> number of records, sorted by type."""
        return dict(sorted(Counter(r.error_type for r in self._records).items()))

    def describe(self) -> str:
        return " ".join(f"{kind}={n}" for kind, n in self.counts().items())

    def _target(self) -> Path:
        if self._path is None:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._path = self.directory / f"errors-{datetime.now(UTC).strftime(TIMESTAMP_FMT)}.log"
        return self._path

    def flush(self) -> Path | None:
        """Append unwritten records to the run's file and return its path."""
        batch = self._records[self._written:]
        if batch:
            with self._target().open("a", encoding="utf-8") as f:
                f.writelines(f"{r.to_json_line()}\n" for r in batch)
            self._written = len(self._records)
        return self._path
