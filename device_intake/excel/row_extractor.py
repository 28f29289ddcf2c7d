from __future__ import annotations

import logging
import math
import re
from typing import Any

from ..identifier.reconstructor import IDENTIFIER_PREFIX, as_text, looks_like_identifier, reconstruct_identifier
from ..models.cell import CellType
from ..models.device_record import DeviceRecord
from .header_mapper import IDENTIFIER_FIELD, HeaderInfo, column_letter
from .reader import SheetGrid, cell_value

"""Row extraction: one DeviceRecord per qualifying data row.

Rows below the header are walked in order. A row qualifies only when its
identifier cell looks like an IMEI (enough digits); blank rows, repeated
headers, totals and notes are skipped without error. The identifier is
recovered through the reconstructor; descriptive fields are copied as
display text, prices parsed to numbers when possible.
"""

__all__ = [
    "MONEY_FIELDS",
    "format_value",
    "extract_row",
    "extract_rows",
]

logger = logging.getLogger(__name__)

MONEY_FIELDS = frozenset({"unit_price", "repair_cost"})
_MONEY_STRIP_RE = re.compile(r"[$,\s]")


def format_value(value: Any, field: str) -> Any:
    """Normalize one descriptive cell value. Empty -> None."""
    if value is None:
        return None
    if field in MONEY_FIELDS:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value) if math.isfinite(value) else None
        stripped = _MONEY_STRIP_RE.sub("", as_text(value))
        if stripped:
            try:
                number = float(stripped)
            except ValueError:
                number = None
            if number is not None and math.isfinite(number):
                return number
    text = as_text(value).strip()
    return text or None


def extract_row(
    grid: SheetGrid,
    row_index: int,
    header: HeaderInfo,
    prefix: str = IDENTIFIER_PREFIX,
) -> DeviceRecord | None:
    """Candidate record for one zero-based row, or None when it does not qualify."""
    id_col = header.column_map.identifier_column
    id_cell = grid.cell(row_index, id_col)
    raw = cell_value(id_cell)
    if id_cell is None or not looks_like_identifier(raw):
        return None

    recovered = reconstruct_identifier(id_cell.type_tag, id_cell.raw_value, id_cell.display_value, prefix)
    if recovered is None:
        return None
    if recovered.precision_loss:
        logger.warning(
            "row=%d cell=%s%d possible precision loss in IMEI %s -> %s",
            row_index + 1,
            column_letter(id_col),
            row_index + 1,
            raw,
            recovered.digits,
        )

    fields: dict[str, Any] = {}
    for field, col in header.column_map.items():
        if field == IDENTIFIER_FIELD:
            continue
        fields[field] = format_value(cell_value(grid.cell(row_index, col)), field)

    return DeviceRecord(
        identifier=recovered.digits,
        identifier_raw=raw,
        identifier_source_type=id_cell.type_tag.value,
        row_number=row_index + 1,
        precision_loss=recovered.precision_loss,
        identifier_numeric=id_cell.raw_value if id_cell.type_tag is CellType.NUMBER else None,
        **fields,
    )


def extract_rows(grid: SheetGrid, header: HeaderInfo, prefix: str = IDENTIFIER_PREFIX) -> list[DeviceRecord]:
    records: list[DeviceRecord] = []
    skipped = 0
    for row_index in range(header.data_start_row, grid.n_rows):
        record = extract_row(grid, row_index, header, prefix)
        if record is None:
            skipped += 1
            continue
        logger.debug(
            "row=%d imei=%s source=%s",
            record.row_number,
            record.identifier,
            record.identifier_source_type,
        )
        records.append(record)
    logger.debug("sheet=%s extracted=%d skipped=%d", grid.sheet_name, len(records), skipped)
    return records
