from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

"""Config loader.

Responsibilities:
- Load YAML config (default config/import.yml)
- Validate against the bundled JSON schema (schema.json next to this module)
- Apply defaults
- Resolve the PostgreSQL DSN (environment first, then the YAML database section)
"""

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "SCHEMA_PATH",
    "ConfigError",
    "DatabaseConfig",
    "ImportConfig",
    "load_config",
    "resolve_dsn",
]

DEFAULT_CONFIG_PATH = Path("config/import.yml")
SCHEMA_PATH = Path(__file__).with_name("schema.json")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection fallback (environment variables take precedence)."""
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class ImportConfig:
    tenant_id: str
    table: str = "employers"
    batch_size: int = 50
    resolve_conflicts: bool = False
    session_directory: str = "./.import-sessions"
    logs_directory: str = "./logs"
    error_display_limit: int = 20
    database: DatabaseConfig = DatabaseConfig()


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing / not JSON, or the data violates it
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> ImportConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config validation failed: top level must be a mapping")

    _validate_config_schema(data)

    db_raw = data.get("database") or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    defaults = ImportConfig(tenant_id=data["tenant_id"])
    return ImportConfig(
        tenant_id=data["tenant_id"],
        table=data.get("table", defaults.table),
        batch_size=data.get("batch_size", defaults.batch_size),
        resolve_conflicts=data.get("resolve_conflicts", defaults.resolve_conflicts),
        session_directory=data.get("session_directory", defaults.session_directory),
        logs_directory=data.get("logs_directory", defaults.logs_directory),
        error_display_limit=data.get("error_display_limit", defaults.error_display_limit),
        database=db,
    )


def resolve_dsn(db_cfg: DatabaseConfig) -> str:
    """Build the libpq DSN.

    Priority:
        1. DATABASE_URL / PGDSN environment variables (whole DSN)
        2. database.dsn in the YAML config
        3. PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE, falling back to
           the individual YAML keys and then libpq-style defaults
    """
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn
