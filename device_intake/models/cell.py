from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

"""RawCell model for the spreadsheet cell reader.

A RawCell is produced per read and never persisted. It carries both the
display-formatted text (what the customer saw in their spreadsheet) and the
underlying stored value, because the two disagree for long numbers.
"""

__all__ = [
    "CellType",
    "RawCell",
]


class CellType(Enum):
    """Stored type of a spreadsheet cell.

    Values follow the single-letter convention used by spreadsheet formats:
    - STRING: "s" text cell
    - NUMBER: "n" numeric cell (ints, floats, dates stored as serials)
    - BOOLEAN: "b"
    - ERROR: "e" (#N/A, #REF! ...)
    """
    STRING = "s"
    NUMBER = "n"
    BOOLEAN = "b"
    ERROR = "e"


@dataclass(frozen=True)
class RawCell:
    """Single cell snapshot: display text + raw value + type tag."""
    display_value: str | None  # 書式適用後の表示文字列
    raw_value: Any  # 格納値 (float/int/str/bool)
    type_tag: CellType
