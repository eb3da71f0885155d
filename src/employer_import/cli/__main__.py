from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from ..config.loader import DEFAULT_CONFIG_PATH, ConfigError, ImportConfig, load_config, resolve_dsn
from ..db.memory import InMemoryEmployerStore
from ..db.postgres import PostgresEmployerStore
from ..db.store import EmployerStore, StoreError
from ..excel.reader import SheetReadError, read_first_sheet, sheet_rows
from ..logging.error_log import ErrorLogBuffer
from ..logging.init import log_summary, setup_logging
from ..services import session as session_service
from ..services.normalizer import find_header_row_index
from ..services.progress import ProgressTracker
from ..services.session_store import SessionStore
from ..services.summary import render_error_lines, render_preview_line, render_result_line

"""CLI entrypoint.

Flow:
- preview FILE: read sheet -> parse -> match against the tenant snapshot -> save session
- run: reconcile the saved session (simulate unless --commit)
- status / clear: look at or drop the saved session
- inspect FILE: print the detected header row and first data rows

Exit code contract:
    0 success, 1 fatal (config / file / database), 2 finished with row errors,
    3 session expired during the run
"""

EXIT_SUCCESS = 0
EXIT_FATAL = 1
EXIT_ROW_ERRORS = 2
EXIT_SESSION_EXPIRED = 3

INSPECT_SAMPLE_ROWS = 3

logger = logging.getLogger("employer_import.cli")


@contextmanager
def _db_connection(cfg: ImportConfig) -> Iterator[Any]:  # pragma: no cover (thin wrapper)
    """psycopg2 connection + cursor.

    autocommit=True: PostgresEmployerStore issues BEGIN/COMMIT per candidate,
    so a failure in one row never rolls back the rows before it.
    """
    conn = psycopg2.connect(resolve_dsn(cfg.database))
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            yield cur
    finally:
        conn.close()


@contextmanager
def _store_scope(cfg: ImportConfig, *, allow_mock: bool = True) -> Iterator[EmployerStore]:
    """Yield the live store, or an empty in-memory store in mock mode.

    Mock mode: DISABLE_DB_CONNECT=1, or the connection cannot be opened and
    allow_mock is set. With allow_mock=False the connection error propagates.
    """
    if os.getenv("DISABLE_DB_CONNECT") == "1":
        logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1 -> mock mode")
        yield InMemoryEmployerStore()
        return
    with ExitStack() as stack:
        try:
            cursor = stack.enter_context(_db_connection(cfg))
        except psycopg2.Error as e:
            if not allow_mock:
                raise
            if os.getenv("SUPPRESS_DB_WARNING") == "1":
                logger.debug("DB connection failed -> mock mode: %s", e)
            else:
                logger.warning("DB connection failed -> mock mode (nothing is written): %s", e)
            cursor = None
        if cursor is None:
            yield InMemoryEmployerStore()
        else:
            logger.debug("mode=live table=%s", cfg.table)
            yield PostgresEmployerStore(cursor, table=cfg.table)


def _emit_summary(line: str) -> None:
    # log_summary が "SUMMARY " を付けるので描画済みの接頭辞を外す
    log_summary(line.removeprefix("SUMMARY "))


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env; its values win over the process environment (DB settings first)."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="employer-import", description="Employer spreadsheet import & reconciliation")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="YAML config path")
    sub = p.add_subparsers(dest="command", required=True)

    pv = sub.add_parser("preview", help="Load a sheet, classify rows and save the session")
    pv.add_argument("file", type=Path)

    run = sub.add_parser("run", help="Reconcile the saved session (simulate unless --commit)")
    run.add_argument("--file", type=Path, default=None, help="Preview this sheet first instead of using the saved session")
    run.add_argument("--commit", action="store_true", help="Write to the database")
    run.add_argument("--resolve-conflicts", action="store_true", default=None, help="Release keys held by other employers")
    run.add_argument("--batch-size", type=int, default=None)

    sub.add_parser("status", help="Show the saved session")
    sub.add_parser("clear", help="Drop the saved session")

    ins = sub.add_parser("inspect", help="Print detected header row and first rows, then exit")
    ins.add_argument("file", type=Path)
    return p.parse_args(argv)


def _inspect(path: Path) -> int:
    try:
        df = read_first_sheet(path)
    except SheetReadError as e:
        logger.error("inspect: %s", e)
        return EXIT_FATAL
    logger.info("FILE: %s", path.name)
    if df.empty:
        logger.info("  empty sheet")
        return EXIT_SUCCESS
    header_index = find_header_row_index(df)
    rows = sheet_rows(df, header_index)
    logger.info("  header_row=%d columns=%s", header_index + 1, list(rows[0][1]) if rows else [])
    for row_number, row in rows[:INSPECT_SAMPLE_ROWS]:
        logger.info("  row %d: %s", row_number, {k: v for k, v in row.items() if not str(k).startswith("__col_")})
    logger.info("  data_rows=%d", len(rows))
    return EXIT_SUCCESS


def _preview(cfg: ImportConfig, path: Path, sessions: SessionStore) -> int:
    try:
        with _store_scope(cfg) as store:
            session = session_service.preview_file(cfg.tenant_id, path, store)
    except SheetReadError as e:
        logger.error("preview: %s", e)
        return EXIT_FATAL
    except StoreError as e:
        logger.error("preview: cannot read employers: %s", e.message)
        return EXIT_FATAL
    session = replace(session, resolve_conflicts=cfg.resolve_conflicts)
    saved = sessions.save(session)
    logger.debug("session saved: %s", saved)
    _emit_summary(render_preview_line(session.summary))
    return EXIT_SUCCESS


def _run(cfg: ImportConfig, args: argparse.Namespace, sessions: SessionStore) -> int:
    batch_size = args.batch_size if args.batch_size is not None else cfg.batch_size
    if batch_size < 1:
        logger.error("run: --batch-size must be >= 1")
        return EXIT_FATAL
    resolve = cfg.resolve_conflicts if args.resolve_conflicts is None else args.resolve_conflicts
    error_log = ErrorLogBuffer(Path(cfg.logs_directory))

    try:
        # commit は mock に落とさない
        with _store_scope(cfg, allow_mock=not args.commit) as store:
            if args.file is not None:
                session = session_service.preview_file(cfg.tenant_id, args.file, store)
                _emit_summary(render_preview_line(session.summary))
            else:
                session = sessions.load(cfg.tenant_id)
                if session is None:
                    logger.error("run: no saved session for tenant %s (use preview FILE or --file)", cfg.tenant_id)
                    return EXIT_FATAL
            plan = session_service.plan_commit(replace(session, resolve_conflicts=resolve))
            with ProgressTracker(len(plan.selected)) as progress:
                session = session_service.apply(
                    session,
                    store,
                    dry_run=not args.commit,
                    resolve_conflicts=resolve,
                    batch_size=batch_size,
                    error_log=error_log,
                    progress_callback=progress,
                )
    except SheetReadError as e:
        logger.error("run: %s", e)
        return EXIT_FATAL
    except StoreError as e:
        logger.error("run: cannot read employers: %s", e.message)
        return EXIT_FATAL
    except psycopg2.Error as e:
        logger.error("run: database unavailable, nothing was committed: %s", e)
        return EXIT_FATAL

    result = session.last_result
    assert result is not None
    for line in render_error_lines(result, cfg.error_display_limit):
        if result.errors:
            logger.warning(line)
        else:
            logger.info(line)
    log_path = error_log.flush()
    if log_path is not None:
        logger.info("error log: %s (%s)", log_path, error_log.describe())

    if not result.dry_run and result.ok:
        sessions.clear(cfg.tenant_id)
    else:
        sessions.save(session)

    _emit_summary(render_result_line(result))
    if result.session_expired:
        return EXIT_SESSION_EXPIRED
    if result.errors:
        return EXIT_ROW_ERRORS
    return EXIT_SUCCESS


def _status(cfg: ImportConfig, sessions: SessionStore) -> int:
    session = sessions.load(cfg.tenant_id)
    if session is None:
        logger.info("no saved session for tenant %s", cfg.tenant_id)
        return EXIT_SUCCESS
    logger.info("source=%s resolve_conflicts=%s", session.source_name, session.resolve_conflicts)
    _emit_summary(render_preview_line(session.summary))
    if session.last_result is not None:
        _emit_summary(render_result_line(session.last_result))
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    logger_root = setup_logging()

    # 空リスト [] が渡された場合に sys.argv[1:] が混入しないよう None のときのみ読む
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    if args.debug:
        setup_logging(debug=True)
        logger_root.debug("debug mode enabled")

    _load_env_file(Path(".env"), override=True)
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error("config: %s", e)
        return EXIT_FATAL

    sessions = SessionStore(Path(cfg.session_directory))

    if args.command == "inspect":
        return _inspect(args.file)
    if args.command == "preview":
        return _preview(cfg, args.file, sessions)
    if args.command == "run":
        return _run(cfg, args, sessions)
    if args.command == "status":
        return _status(cfg, sessions)
    if args.command == "clear":
        removed = sessions.clear(cfg.tenant_id)
        logger.info("session %s for tenant %s", "cleared" if removed else "not found", cfg.tenant_id)
        return EXIT_SUCCESS
    logger.error("unknown command: %s", args.command)  # pragma: no cover
    return EXIT_FATAL  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
