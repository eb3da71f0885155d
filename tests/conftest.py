# Shared pytest fixtures
from __future__ import annotations

import tempfile
from collections.abc import Callable
from pathlib import Path

import pandas as pd
import pytest

from employer_import.db.memory import InMemoryEmployerStore
from employer_import.logging.init import reset_logging

TENANT = "clinic-1"


@pytest.fixture(autouse=True)
def _fresh_logging():
    # handler は setup 時点の sys.stdout を掴むので capsys ごとに作り直す
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        monkeypatch.setenv("DISABLE_DB_CONNECT", "1")
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return f"""tenant_id: {TENANT}
batch_size: 2
resolve_conflicts: false
session_directory: ./.import-sessions
logs_directory: ./logs
error_display_limit: 20
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def store() -> InMemoryEmployerStore:
    return InMemoryEmployerStore()


@pytest.fixture()
def make_excel(tmp_path: Path) -> Callable[..., Path]:
    """Write rows (list of lists, header included) to the first sheet of an .xlsx."""

    def _make(rows: list[list[object]], name: str = "employers.xlsx", directory: Path | None = None) -> Path:
        path = (directory or tmp_path) / name
        with pd.ExcelWriter(path, engine="openpyxl") as writer:
            pd.DataFrame(rows).to_excel(writer, sheet_name="Empresas", index=False, header=False)
        return path

    return _make
