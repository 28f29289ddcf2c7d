from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import IO, Any

import pandas as pd

from ..excel.header_mapper import find_header_row
from ..excel.reader import SheetGrid, grid_from_frame, grid_from_rows, read_grid
from ..excel.row_extractor import extract_rows
from ..identifier.reconstructor import IDENTIFIER_PREFIX
from ..identifier.validator import validate, validate_batch
from ..models.config_models import ExtractionConfig
from ..models.device_record import BatchValidation, DeviceRecord

"""Extraction entry points: file / rows -> validated DeviceRecords.

Flow: grid -> header detection -> row extraction -> identifier validation.
Structural problems (no header, unreadable file) raise and no partial list is
returned; per-row identifier problems never abort, they are attached to the
record as validation errors for a reviewer.
"""

__all__ = [
    "extract_devices",
    "extract_devices_from_rows",
    "extract_devices_from_frame",
    "extract_devices_from_grid",
    "summarize_records",
]

logger = logging.getLogger(__name__)


def extract_devices_from_grid(grid: SheetGrid, config: ExtractionConfig | None = None) -> list[DeviceRecord]:
    cfg = config or ExtractionConfig()
    header = find_header_row(grid.header_candidates(cfg.header_scan_rows), scan_rows=cfg.header_scan_rows)
    logger.debug(
        "sheet=%s header_row=%d columns=%s",
        grid.sheet_name,
        header.header_row_index + 1,
        header.column_map.describe(),
    )
    candidates = extract_rows(grid, header, prefix=cfg.identifier_prefix)
    records = [
        c.with_validation(validate(c.identifier_raw, c.identifier_numeric, prefix=cfg.identifier_prefix))
        for c in candidates
    ]
    invalid = sum(1 for r in records if not r.is_valid)
    if invalid:
        logger.debug("sheet=%s invalid_imei=%d", grid.sheet_name, invalid)
    return records


def extract_devices(
    file_handle: str | Path | IO[bytes],
    *,
    sheet_name: str | None = None,
    config: ExtractionConfig | None = None,
    filename: str | None = None,
) -> list[DeviceRecord]:
    """Extract validated device records from an uploaded spreadsheet.

    Parameters
    ----------
    file_handle: path or binary handle (.xlsx/.xlsm/.csv)
    sheet_name: worksheet to read (first sheet when None)
    config: header scan depth and identifier prefix
    filename: original upload name, used for type detection on handles

    Raises
    ------
    NoHeaderFound: no IMEI header within the scanned rows
    UnsupportedFileError: file cannot be read
    """
    grid = read_grid(file_handle, sheet_name=sheet_name, filename=filename)
    return extract_devices_from_grid(grid, config)


def extract_devices_from_rows(
    rows: Sequence[Sequence[Any]],
    config: ExtractionConfig | None = None,
) -> list[DeviceRecord]:
    """Same as extract_devices for an in-memory row set (values General-formatted)."""
    return extract_devices_from_grid(grid_from_rows(rows), config)


def extract_devices_from_frame(df: pd.DataFrame, config: ExtractionConfig | None = None) -> list[DeviceRecord]:
    return extract_devices_from_grid(grid_from_frame(df), config)


def summarize_records(records: Sequence[DeviceRecord], prefix: str = IDENTIFIER_PREFIX) -> BatchValidation:
    """Batch view (valid / invalid / duplicate within submission) of extracted records."""
    return validate_batch(
        [r.identifier_raw for r in records],
        [r.identifier_numeric for r in records],
        prefix=prefix,
    )
