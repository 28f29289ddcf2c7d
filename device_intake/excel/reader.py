from __future__ import annotations

import re
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import IO, Any

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..models.cell import CellType, RawCell
from .header_mapper import ExtractionError

"""Spreadsheet cell grid reader.

Every cell is kept as display text + stored value + type tag (RawCell). The
display text is derived from the cell's number format the way a spreadsheet
application renders it, which matters for long numbers: under the General
format 351454482579210 is shown as "3.51454E+14" while the stored float still
carries every digit.

Sources:
- .xlsx / .xlsm via openpyxl (data_only=True, cached formula results)
- .csv via pandas, read as text (dtype=str) so nothing is coerced on the way in
- in-memory row sets / DataFrames (header=None layout)
"""

__all__ = [
    "UnsupportedFileError",
    "SheetGrid",
    "cell_value",
    "read_cell",
    "format_number",
    "general_format",
    "to_raw_cell",
    "read_grid",
    "read_workbook_grid",
    "read_csv_grid",
    "grid_from_frame",
    "grid_from_rows",
]

WORKBOOK_SUFFIXES = {".xlsx", ".xlsm"}
CSV_SUFFIXES = {".csv"}
ERROR_CODES = frozenset({"#NULL!", "#DIV/0!", "#VALUE!", "#REF!", "#NAME?", "#NUM!", "#N/A"})
# General 書式は 11 桁を超える整数を指数表記にする
GENERAL_MAX_DIGITS = 11

_NUMERIC_TEXT_RE = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")
_FIXED_FMT_RE = re.compile(r"^0\.(0+)$")
_SCI_FMT_RE = re.compile(r"^(?:0|#+0*)(?:\.(0*))?E[+-]0+$", re.IGNORECASE)


class UnsupportedFileError(ExtractionError):
    """Raised when a file cannot be opened as a workbook or CSV."""


@dataclass
class SheetGrid:
    """Rectangular-ish grid of RawCell (None for empty cells)."""
    sheet_name: str
    rows: list[list[RawCell | None]] = field(default_factory=list)

    @property
    def n_rows(self) -> int:
        return len(self.rows)

    def cell(self, row: int, col: int) -> RawCell | None:
        return read_cell(self, row, col)

    def header_candidates(self, limit: int) -> list[list[str | None]]:
        """Display strings of the first ``limit`` rows for header detection."""
        out: list[list[str | None]] = []
        for row in self.rows[:limit]:
            values = [cell_value(c) for c in row]
            out.append([None if v is None else str(v) for v in values])
        return out


def cell_value(cell: RawCell | None) -> Any:
    """Display text if present, else the stored value, else None. Never raises."""
    if cell is None:
        return None
    if cell.display_value not in (None, ""):
        return cell.display_value
    if cell.raw_value is None or cell.raw_value == "":
        return None
    return cell.raw_value


def read_cell(grid: SheetGrid, row: int, col: int) -> RawCell | None:
    """Cell at zero-based (row, col); None when empty or out of range."""
    if row < 0 or col < 0 or row >= len(grid.rows):
        return None
    cells = grid.rows[row]
    if col >= len(cells):
        return None
    return cells[col]


def _strip_mantissa(text: str) -> str:
    mantissa, _, exponent = text.partition("E")
    if "." in mantissa:
        mantissa = mantissa.rstrip("0").rstrip(".")
    return f"{mantissa}E{exponent}"


def general_format(value: int | float) -> str:
    """Render a number the way the General format does."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        if len(str(abs(value))) <= GENERAL_MAX_DIGITS:
            return str(value)
        # 仮数部は最大 6 桁 (3.51454E+14)
        return _strip_mantissa(f"{value:.5E}")
    text = format(value, ".10G")
    return _strip_mantissa(text) if "E" in text else text


def format_number(value: int | float, number_format: str | None = "General") -> str:
    """Display text for a stored number under ``number_format``.

    Covers the formats that matter for identifier columns; anything else falls
    back to General.
    """
    fmt = (number_format or "General").strip()
    if fmt == "@":
        return str(int(value)) if float(value).is_integer() else repr(float(value))
    sci = _SCI_FMT_RE.match(fmt)
    if sci:
        decimals = len(sci.group(1) or "")
        return f"{value:.{decimals}E}"
    if fmt in ("0", "#0", "#"):
        return str(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    fixed = _FIXED_FMT_RE.match(fmt)
    if fixed:
        return f"{value:.{len(fixed.group(1))}f}"
    return general_format(value)


def to_raw_cell(value: Any, number_format: str | None = "General") -> RawCell | None:
    """Build a RawCell from a stored value and its number format."""
    if value is None:
        return None
    if isinstance(value, bool):
        return RawCell("TRUE" if value else "FALSE", value, CellType.BOOLEAN)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and value != value:  # NaN
            return None
        return RawCell(format_number(value, number_format), value, CellType.NUMBER)
    if isinstance(value, (datetime, date, time)):
        # 日付はシリアル値として格納されるため number 扱い
        return RawCell(value.isoformat(), value, CellType.NUMBER)
    if isinstance(value, str):
        if value in ERROR_CODES:
            return RawCell(value, value, CellType.ERROR)
        return RawCell(value, value, CellType.STRING)
    return RawCell(str(value), value, CellType.STRING)


def _suffix_of(source: str | Path | IO[bytes], filename: str | None) -> str:
    if filename:
        return Path(filename).suffix.lower()
    if isinstance(source, (str, Path)):
        return Path(source).suffix.lower()
    name = getattr(source, "name", None)
    if isinstance(name, str):
        return Path(name).suffix.lower()
    return ".xlsx"


def read_workbook_grid(source: str | Path | IO[bytes], sheet_name: str | None = None) -> SheetGrid:
    """Load one worksheet (first sheet by default) into a SheetGrid."""
    try:
        wb = load_workbook(source, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise UnsupportedFileError(f"cannot open workbook: {e}") from e
    try:
        if sheet_name is not None:
            if sheet_name not in wb.sheetnames:
                raise ExtractionError(f"sheet not found: {sheet_name}")
            ws = wb[sheet_name]
        else:
            ws = wb.worksheets[0]
        rows: list[list[RawCell | None]] = []
        for row in ws.iter_rows():
            rows.append([to_raw_cell(c.value, c.number_format) for c in row])
        return SheetGrid(sheet_name=ws.title, rows=rows)
    finally:
        wb.close()


def _csv_cell(text: Any) -> RawCell | None:
    if text is None or (isinstance(text, float) and text != text):
        return None
    text = str(text)
    if not text.strip():
        return None
    if _NUMERIC_TEXT_RE.match(text):
        stripped = text.strip()
        raw: int | float
        if re.fullmatch(r"[+-]?\d+", stripped):
            raw = int(stripped)
        else:
            raw = float(stripped)
        # CSV は書式を持たないので表示文字列 = 元テキスト
        return RawCell(stripped, raw, CellType.NUMBER)
    return RawCell(text, text, CellType.STRING)


def read_csv_grid(source: str | Path | IO[bytes], sheet_name: str | None = None) -> SheetGrid:
    """Load a CSV upload as text; numeric-looking cells become number cells."""
    try:
        df = pd.read_csv(source, header=None, dtype=str, keep_default_na=False, skip_blank_lines=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise UnsupportedFileError(f"cannot parse CSV: {e}") from e
    rows = [[_csv_cell(v) for v in record] for record in df.itertuples(index=False, name=None)]
    return SheetGrid(sheet_name=sheet_name or "csv", rows=rows)


def grid_from_frame(df: pd.DataFrame, sheet_name: str = "Sheet1") -> SheetGrid:
    """Grid from a DataFrame laid out with header=None (rows as-is)."""
    rows: list[list[RawCell | None]] = []
    for record in df.itertuples(index=False, name=None):
        cells: list[RawCell | None] = []
        for v in record:
            if v is not None and not isinstance(v, str) and pd.isna(v):
                cells.append(None)
                continue
            if isinstance(v, pd.Timestamp):
                v = v.to_pydatetime()
            elif hasattr(v, "item"):  # numpy scalar -> Python
                v = v.item()
            cells.append(to_raw_cell(v))
        rows.append(cells)
    return SheetGrid(sheet_name=sheet_name, rows=rows)


def grid_from_rows(rows: Sequence[Sequence[Any]], sheet_name: str = "Sheet1") -> SheetGrid:
    """Grid from plain Python rows; values are treated as General-formatted."""
    return SheetGrid(sheet_name=sheet_name, rows=[[to_raw_cell(v) for v in row] for row in rows])


def read_grid(
    source: str | Path | IO[bytes],
    sheet_name: str | None = None,
    filename: str | None = None,
) -> SheetGrid:
    """Dispatch on file suffix (.xlsx/.xlsm workbook, .csv text).

    Raises:
        UnsupportedFileError: unknown suffix or unreadable file
    """
    suffix = _suffix_of(source, filename)
    if suffix in WORKBOOK_SUFFIXES:
        return read_workbook_grid(source, sheet_name)
    if suffix in CSV_SUFFIXES:
        return read_csv_grid(source, sheet_name)
    raise UnsupportedFileError(f"unsupported file type: {suffix or '<none>'}")
