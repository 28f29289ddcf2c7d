from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

"""Header row detection and column mapping.

Customer spreadsheets put the header anywhere in the first rows (company
banners, blank rows and instructions come first) and name columns however
they like. This module works on plain strings only so it can be tested
without a workbook.

Matching, per header cell (lower-cased, trimmed):
1. exact equality with an alias
2. cell starts with an alias
3. cell contains an alias
Canonical fields are tried in COLUMN_ALIASES order and the first field with
any match claims the column. A field already mapped in the row is skipped,
and a claimed column is never reconsidered. Ambiguous headers therefore
resolve by dictionary order: a "Repair Cost" column to the left of
"Unit Price" is claimed by unit_price (alias "cost" is a substring) and the
real price column then stays unmapped.
"""

__all__ = [
    "COLUMN_ALIASES",
    "IDENTIFIER_FIELD",
    "HEADER_SCAN_ROWS",
    "ExtractionError",
    "NoHeaderFound",
    "ColumnMap",
    "HeaderInfo",
    "match_field",
    "map_header_row",
    "find_header_row",
    "column_letter",
]

IDENTIFIER_FIELD = "identifier"
HEADER_SCAN_ROWS = 20

# 順序が優先度 (先にマッチしたフィールドが列を確保する)
COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "identifier": ("imei", "imei number", "imei#", "serial", "serial number"),
    "model": ("model", "device model", "phone model", "device"),
    "storage": ("storage", "capacity", "size", "gb", "storage size"),
    "condition": ("grade", "condition", "device condition", "quality", "grading"),
    "issue_description": ("issue", "problem", "issue description", "defect", "reason"),
    "issue_category": ("issue category", "category", "issue type", "problem type"),
    "requested_action": ("repair/return", "action", "repair or return", "request", "requested action"),
    "unit_price": ("unit price", "price", "value", "cost", "device price"),
    "repair_cost": ("repair cost", "repair cost (if applicable)", "cost of repair", "repair price"),
}


class ExtractionError(Exception):
    """Base class for structural extraction failures (whole file rejected)."""


class NoHeaderFound(ExtractionError):
    """Raised when no scanned row maps the identifier column."""


class ColumnMap(Mapping[str, int]):
    """Immutable canonical field -> zero-based column index mapping."""

    def __init__(self, columns: Mapping[str, int]) -> None:
        if IDENTIFIER_FIELD not in columns:
            raise ValueError("column map requires an identifier column")
        self._columns = MappingProxyType(dict(columns))

    def __getitem__(self, key: str) -> int:
        return self._columns[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __repr__(self) -> str:
        return f"ColumnMap({dict(self._columns)!r})"

    @property
    def identifier_column(self) -> int:
        return self._columns[IDENTIFIER_FIELD]

    def describe(self) -> str:
        """Log-friendly rendering, e.g. ``identifier=B model=C``."""
        return " ".join(f"{field}={column_letter(idx)}" for field, idx in self._columns.items())


@dataclass(frozen=True)
class HeaderInfo:
    header_row_index: int  # 0 始まり
    column_map: ColumnMap

    @property
    def data_start_row(self) -> int:
        return self.header_row_index + 1


def _normalize(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def match_field(
    header_text: str,
    taken: set[str] | frozenset[str] = frozenset(),
    aliases: Mapping[str, Sequence[str]] = COLUMN_ALIASES,
) -> str | None:
    """Return the first canonical field whose aliases match ``header_text``."""
    if not header_text:
        return None
    for field, names in aliases.items():
        if field in taken:
            continue
        if any(header_text == n for n in names):
            return field
        if any(header_text.startswith(n) for n in names):
            return field
        if any(n in header_text for n in names):
            return field
    return None


def map_header_row(
    cells: Sequence[Any],
    aliases: Mapping[str, Sequence[str]] = COLUMN_ALIASES,
) -> dict[str, int]:
    """Map one candidate header row. May return a map without identifier."""
    mapped: dict[str, int] = {}
    for col, cell in enumerate(cells):
        field = match_field(_normalize(cell), set(mapped), aliases)
        if field is not None:
            mapped[field] = col
    return mapped


def find_header_row(
    rows: Sequence[Sequence[Any]],
    scan_rows: int = HEADER_SCAN_ROWS,
    aliases: Mapping[str, Sequence[str]] = COLUMN_ALIASES,
) -> HeaderInfo:
    """Locate the header row within the first ``scan_rows`` rows.

    The first row whose mapping includes the identifier column wins.

    Raises:
        NoHeaderFound: when none of the scanned rows has an identifier column
    """
    for idx, cells in enumerate(rows[:scan_rows]):
        mapped = map_header_row(cells, aliases)
        if IDENTIFIER_FIELD in mapped:
            return HeaderInfo(header_row_index=idx, column_map=ColumnMap(mapped))
    raise NoHeaderFound(
        f"no header row with an IMEI column in the first {min(len(rows), scan_rows)} rows"
    )


def column_letter(index: int) -> str:
    """Zero-based column index to spreadsheet letters (0 -> A, 26 -> AA)."""
    if index < 0:
        raise ValueError(f"negative column index: {index}")
    letters = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters
