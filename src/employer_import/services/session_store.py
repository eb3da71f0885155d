from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from .session import ImportSession

"""Session continuity storage.

Keeps the review state of an import between CLI invocations: one JSON file per
tenant. It is not a durable log; a zero-error commit removes the file.
"""

__all__ = [
    "DEFAULT_SESSION_DIR",
    "SessionStore",
]

logger = logging.getLogger(__name__)

DEFAULT_SESSION_DIR = Path("./.import-sessions")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class SessionStore:
    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory if directory is not None else DEFAULT_SESSION_DIR

    def path_for(self, tenant_id: str) -> Path:
        return self.directory / f"import-session-{_UNSAFE_CHARS.sub('_', tenant_id)}.json"

    def save(self, session: ImportSession) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(session.tenant_id)
        path.write_text(json.dumps(session.to_dict(), ensure_ascii=False, default=str), encoding="utf-8")
        return path

    def load(self, tenant_id: str) -> ImportSession | None:
        """Return the saved session, or None when absent or unreadable."""
        path = self.path_for(tenant_id)
        if not path.exists():
            return None
        try:
            return ImportSession.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("ignoring unreadable session file %s: %s", path, e)
            return None

    def clear(self, tenant_id: str) -> bool:
        path = self.path_for(tenant_id)
        if not path.exists():
            return False
        path.unlink()
        return True
