from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from pathlib import Path

from ..db.store import DeviceStore
from ..excel.header_mapper import ExtractionError, NoHeaderFound
from ..excel.reader import UnsupportedFileError
from ..identifier.validator import format_validation_message
from ..logging.error_log import ErrorLogBuffer
from ..models.config_models import IntakeConfig
from ..models.error_record import ErrorRecord
from ..models.processing_result import FileStat, ProcessingResult
from .clock import Clock, SystemClock
from .duplicates import DuplicateDetector
from .extraction import extract_devices
from .intake import persist_new_submission
from .progress import ProgressTracker

"""Run orchestration: uploaded files -> extraction -> persistence -> metrics.

Each file is one submission (reference = file stem unless the caller passes
one) and is persisted in its own transaction; a failed file never affects
the others. Error records are buffered and flushed once at the end.
"""

__all__ = [
    "UPLOAD_SUFFIXES",
    "ProcessingError",
    "scan_upload_files",
    "process_all",
]

logger = logging.getLogger(__name__)

UPLOAD_SUFFIXES = (".xlsx", ".xlsm", ".csv")


class ProcessingError(Exception):
    """Fatal run-level error (directory missing, unreadable)."""


def scan_upload_files(directory: Path) -> list[Path]:
    """Upload files in ``directory`` (non-recursive, name order).

    Spreadsheet lock files (``~$name.xlsx``) are ignored.
    """
    if not directory.exists():
        raise ProcessingError(f"directory not found: {directory}")
    if not directory.is_dir():
        raise ProcessingError(f"path is not a directory: {directory}")
    try:
        return sorted(
            p
            for p in directory.iterdir()
            if p.is_file() and p.suffix.lower() in UPLOAD_SUFFIXES and not p.name.startswith("~$")
        )
    except OSError as e:
        raise ProcessingError(f"error reading directory {directory}: {e}") from e


def _error_type(error: Exception) -> str:
    if isinstance(error, NoHeaderFound):
        return "NO_HEADER_FOUND"
    if isinstance(error, UnsupportedFileError):
        return "UNSUPPORTED_FILE"
    return "EXTRACTION_ERROR"


def _failed(path: Path, error: Exception, started: float, error_log: ErrorLogBuffer) -> FileStat:
    error_log.append(
        ErrorRecord.create(
            file=path.name,
            sheet="<FILE_LEVEL>",
            row=-1,
            error_type=_error_type(error),
            message=str(error),
        )
    )
    logger.error("file=%s %s", path.name, error)
    return FileStat(
        file_name=path.name,
        status="failed",
        devices=0,
        valid=0,
        invalid=0,
        duplicates=0,
        warnings=0,
        elapsed_seconds=time.perf_counter() - started,
        error=str(error),
    )


def _process_single_file(
    path: Path,
    config: IntakeConfig,
    store: DeviceStore,
    detector: DuplicateDetector,
    error_log: ErrorLogBuffer,
    submission_reference: str | None,
) -> FileStat:
    started = time.perf_counter()
    try:
        records = extract_devices(path, config=config.extraction)
    except ExtractionError as e:
        return _failed(path, e, started, error_log)

    for record in records:
        if not record.is_valid and record.validation is not None:
            logger.warning("file=%s row=%d %s", path.name, record.row_number, format_validation_message(record.validation))

    intake = persist_new_submission(store, submission_reference or path.stem, records, detector, error_log, path.name)
    valid = sum(1 for r in records if r.is_valid)
    warnings = sum(1 for r in records if r.is_valid and r.validation is not None and r.validation.has_warnings)
    return FileStat(
        file_name=path.name,
        status="success" if intake.ok else "failed",
        devices=len(records),
        valid=valid,
        invalid=len(records) - valid,
        duplicates=intake.duplicates,
        warnings=warnings,
        elapsed_seconds=time.perf_counter() - started,
        error=intake.error,
    )


def process_all(
    config: IntakeConfig,
    store: DeviceStore,
    *,
    clock: Clock | None = None,
    files: list[Path] | None = None,
    submission_reference: str | None = None,
    error_log: ErrorLogBuffer | None = None,
) -> ProcessingResult:
    """Process ``files`` (default: every upload in source_directory).

    Raises:
        ProcessingError: source directory missing or unreadable
    """
    start_time = datetime.now(UTC)
    started = time.perf_counter()
    error_log = error_log if error_log is not None else ErrorLogBuffer()
    detector = DuplicateDetector(store, clock or SystemClock(), config.duplicates.window_days)

    paths = files if files is not None else scan_upload_files(Path(config.source_directory))

    stats: list[FileStat] = []
    with ProgressTracker(len(paths)) as progress:
        for path in paths:
            progress.start_file(path)
            stat = _process_single_file(path, config, store, detector, error_log, submission_reference)
            stats.append(stat)
            progress.finish_file(devices=stat.devices, invalid=stat.invalid)

    try:
        written = error_log.flush()
    except OSError as e:
        logger.error("error log flush failed: %s", e)
    else:
        if written is not None:
            logger.info("error log: %s", written)

    ok = [s for s in stats if s.status == "success"]
    return ProcessingResult(
        success_files=len(ok),
        failed_files=len(stats) - len(ok),
        total_devices=sum(s.devices for s in ok),
        valid_devices=sum(s.valid for s in ok),
        invalid_devices=sum(s.invalid for s in ok),
        duplicate_devices=sum(s.duplicates for s in ok),
        warning_devices=sum(s.warnings for s in ok),
        start_time=start_time,
        end_time=datetime.now(UTC),
        elapsed_seconds=time.perf_counter() - started,
        file_stats=stats,
    )
