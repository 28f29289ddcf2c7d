from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from device_intake.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config
from device_intake.db.postgres_store import PostgresDeviceStore
from device_intake.db.store import DeviceStore, InMemoryDeviceStore, StoreError
from device_intake.excel.header_mapper import ExtractionError, find_header_row
from device_intake.excel.reader import cell_value, read_grid
from device_intake.logging.init import get_logger, log_summary, set_debug, setup_logging
from device_intake.models.config_models import DatabaseConfig, IntakeConfig
from device_intake.services.clock import SystemClock
from device_intake.services.orchestrator import ProcessingError, process_all, scan_upload_files
from device_intake.services.retry_queue import SyncRetryQueue
from device_intake.services.summary import render_file_line, render_summary_line

"""CLI entrypoint.

python -m device_intake.cli [files...] [--submission REF] [--debug]
                            [--inspect-data] [--list-failed] [--config PATH]

Without files every upload in source_directory is processed. Devices are
persisted to PostgreSQL when a connection can be made, otherwise the run
falls back to an in-memory store (mock mode) so extraction results and the
SUMMARY line are still produced.

Exit codes: 0 all files succeeded, 2 at least one file failed, 1 fatal.
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

INSPECT_ROWS = 5


def resolve_dsn(db_cfg: DatabaseConfig) -> str:
    """Connection string; environment first, then the config database section.

    1. DATABASE_URL / PGDSN (whole DSN)
    2. PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
    3. database.* in config/intake.yml
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


def _connect(cfg: IntakeConfig) -> Any:  # pragma: no cover (needs a live server)
    conn = psycopg2.connect(resolve_dsn(cfg.database), connect_timeout=5)
    # BEGIN/COMMIT は PostgresDeviceStore.transaction() が発行する
    conn.autocommit = True
    return conn


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env with python-dotenv; .env values win over the process environment."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="device_intake", description="RMA device spreadsheet intake")
    p.add_argument("files", nargs="*", type=Path, help="Upload files (default: all in source_directory)")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Config YAML path")
    p.add_argument("--submission", metavar="REF", help="Submission reference number for all files")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--inspect-data", action="store_true", help="Print detected header/columns and first rows then exit")
    p.add_argument("--list-failed", action="store_true", help="List permanently failed sync retries then exit")
    return p.parse_args(argv)


def _inspect_data(cfg: IntakeConfig, files: list[Path]) -> int:
    for f in files:
        print(f"FILE: {f.name}")
        try:
            grid = read_grid(f)
        except ExtractionError as e:
            print(f"  read_error: {e}")
            continue
        print(f"  SHEET: {grid.sheet_name} rows={grid.n_rows}")
        try:
            header = find_header_row(
                grid.header_candidates(cfg.extraction.header_scan_rows),
                scan_rows=cfg.extraction.header_scan_rows,
            )
        except ExtractionError as e:
            print(f"  header: {e}")
            continue
        print(f"  header_row={header.header_row_index + 1} columns: {header.column_map.describe()}")
        last = min(header.data_start_row + INSPECT_ROWS, grid.n_rows)
        for idx in range(header.data_start_row, last):
            sample = {
                field: cell_value(grid.cell(idx, col)) for field, col in header.column_map.items()
            }
            # 日付等は isoformat で表示
            safe = {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in sample.items()}
            print(f"    row {idx + 1}: {safe}")
    return EXIT_SUCCESS_ALL


def _list_failed(cfg: IntakeConfig, store: DeviceStore) -> int:
    queue = SyncRetryQueue(store, SystemClock(), sync=lambda payload: None, config=cfg.retry)
    try:
        entries = queue.failed_entries()
    except StoreError as e:
        get_logger().error(f"retry queue: {e}")
        return EXIT_FATAL
    for e in entries:
        print(
            f"entry={e.entry_id} device={e.record_ref} submission={e.submission_ref} "
            f"retries={e.retry_count}/{e.max_retries} error={e.last_error}"
        )
    print(f"failed_entries={len(entries)}")
    return EXIT_SUCCESS_ALL


def _run(args: argparse.Namespace, cfg: IntakeConfig, files: list[Path], store: DeviceStore, mode: str) -> int:
    logger = get_logger()
    if args.list_failed:
        return _list_failed(cfg, store)
    try:
        result = process_all(cfg, store, files=files, submission_reference=args.submission)
    except ProcessingError as e:
        logger.error(f"processing({mode}): {e}")
        return EXIT_FATAL

    for stat in result.file_stats or []:
        logger.info(render_file_line(stat))
    logger.info(f"mode={mode} devices={result.total_devices}")

    total_files = result.success_files + result.failed_files
    # log_summary が "SUMMARY " を付けるので除去
    log_summary(render_summary_line(total_files, result)[len("SUMMARY ") :])

    if result.failed_files > 0:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # None のときのみ sys.argv を読む (テストの main([]) で pytest 引数を拾わない)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    if args.debug:
        set_debug(True)
        logger.debug("debug mode enabled")

    if args.files:
        missing = [f for f in args.files if not f.is_file()]
        if missing:
            logger.error(f"file not found: {', '.join(str(m) for m in missing)}")
            return EXIT_FATAL
        files = list(args.files)
    else:
        try:
            files = scan_upload_files(Path(cfg.source_directory))
        except ProcessingError as e:
            logger.error(str(e))
            return EXIT_FATAL
        logger.info(f"Processing files from: {cfg.source_directory}")

    if args.inspect_data:
        return _inspect_data(cfg, files)

    # テスト等で DB 接続を完全に無効化: DISABLE_DB_CONNECT=1
    if os.getenv("DISABLE_DB_CONNECT") == "1":
        logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1 -> mock mode")
        return _run(args, cfg, files, InMemoryDeviceStore(), "mock")

    try:
        conn = _connect(cfg)
    except psycopg2.OperationalError as db_e:
        if os.getenv("SUPPRESS_DB_WARNING") == "1":
            logger.debug(f"DB unavailable -> fallback to mock mode: {db_e}")
        else:
            logger.info(f"DB unavailable -> fallback to mock mode: {db_e}")
        return _run(args, cfg, files, InMemoryDeviceStore(), "mock")
    try:
        return _run(args, cfg, files, PostgresDeviceStore(conn), "live")
    finally:
        conn.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
