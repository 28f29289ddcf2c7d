from __future__ import annotations

import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from ..models.cell import CellType

"""Identifier (IMEI) reconstruction from lossy spreadsheet encodings.

Spreadsheet numeric storage silently rounds long integers and the General
number format renders anything over 11 digits as scientific notation
(351454482579210 -> "3.51454E+14"). Once such a value reaches the validator it
is indistinguishable from a deliberately short entry, so this module is the
one place that knows about the rounding and compensates for it.

Three source cases:
1. text cell: strip non-digits, pad 13-14 digit "35..." values to 15
2. number cell displayed with an exponent: trust the full-precision stored
   value over the display text (the display is truncated first)
3. number cell displayed plainly: strip non-digits from the display text

The precision-loss check is a heuristic, not a guarantee: a run of five zeros
in a scientific-notation candidate usually means the stored float had already
lost its low digits, but a legitimate zero-heavy IMEI trips it too, and
precision loss that produced non-zero digits goes unnoticed.
"""

__all__ = [
    "IDENTIFIER_LENGTH",
    "IDENTIFIER_PREFIX",
    "MIN_IDENTIFIER_DIGITS",
    "ReconstructedIdentifier",
    "as_text",
    "digits_only",
    "is_scientific",
    "expand_scientific",
    "plain_digits",
    "clean_identifier",
    "reconstruct_from_digits",
    "reconstruct_identifier",
    "looks_like_identifier",
]

IDENTIFIER_LENGTH = 15
IDENTIFIER_PREFIX = "35"
# 13-14 桁までは末尾ゼロ埋めで救済する
PAD_FLOOR = 13
# 行を「IMEI らしい」とみなす最小桁数 (無効値もレビュー対象として残す)
MIN_IDENTIFIER_DIGITS = 10
PRECISION_LOSS_RUN = "00000"

_SCIENTIFIC_RE = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)[eE][+-]?\d+\s*$")
_NON_DIGIT_RE = re.compile(r"[^0-9]")


@dataclass(frozen=True)
class ReconstructedIdentifier:
    """Digit string recovered from a cell.

    source is one of "text", "scientific", "number".
    """
    digits: str
    precision_loss: bool = False
    source: str = "text"


def as_text(value: Any) -> str:
    """Textual form of a raw value, rendering integral floats without ".0"."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, Decimal):
        return format(value, "f") if value == value.to_integral_value() else str(value)
    return str(value)


def digits_only(value: Any) -> str:
    return _NON_DIGIT_RE.sub("", as_text(value))


def is_scientific(text: str | None) -> bool:
    """True when text is a number written with an exponent marker (3.51454E+14)."""
    if not text:
        return False
    return _SCIENTIFIC_RE.match(text) is not None


def expand_scientific(text: str) -> str | None:
    """Exact decimal expansion of a scientific-notation string, digits only.

    "3.51454E+14" -> "351454000000000". Only the digits written in the
    mantissa are known; the rest are zeros.
    """
    try:
        number = Decimal(text.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not number.is_finite():
        return None
    return _NON_DIGIT_RE.sub("", format(number, "f")) or None


def plain_digits(value: Any) -> str:
    """Render a stored numeric value as a plain digit string (decimal point removed)."""
    if isinstance(value, str):
        if is_scientific(value):
            return expand_scientific(value) or ""
        return _NON_DIGIT_RE.sub("", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        if value.is_integer():
            return str(int(value))
        # repr は最短往復表現; 指数表記を避けるため Decimal 経由
        return _NON_DIGIT_RE.sub("", format(Decimal(repr(value)), "f"))
    return digits_only(value)


def _pad(digits: str, prefix: str) -> str:
    if PAD_FLOOR <= len(digits) < IDENTIFIER_LENGTH and digits.startswith(prefix):
        return digits.ljust(IDENTIFIER_LENGTH, "0")
    return digits


def clean_identifier(value: Any, prefix: str = IDENTIFIER_PREFIX) -> str | None:
    """Digit-strip a value and apply the short-identifier pad rule."""
    cleaned = digits_only(value)
    if not cleaned:
        return None
    return _pad(cleaned, prefix)


def reconstruct_from_digits(candidate: str | None, prefix: str = IDENTIFIER_PREFIX) -> ReconstructedIdentifier | None:
    """Apply the scientific-notation rules to an already-expanded candidate."""
    if not candidate:
        return None
    precision_loss = PRECISION_LOSS_RUN in candidate
    if len(candidate) == IDENTIFIER_LENGTH and candidate.startswith(prefix):
        return ReconstructedIdentifier(candidate, precision_loss, "scientific")
    return ReconstructedIdentifier(_pad(candidate, prefix), precision_loss, "scientific")


def reconstruct_identifier(
    type_tag: CellType,
    raw_value: Any,
    display: str | None,
    prefix: str = IDENTIFIER_PREFIX,
) -> ReconstructedIdentifier | None:
    """Recover the full identifier digits from one cell, or None.

    Parameters
    ----------
    type_tag: stored cell type
    raw_value: stored value (full-precision float for number cells)
    display: formatted display text, if the reader produced one
    """
    if type_tag is CellType.STRING:
        text = as_text(raw_value)
        # テキストセルに指数表記がそのまま入っているケース (CSV 由来など)
        if is_scientific(text):
            return reconstruct_from_digits(expand_scientific(text), prefix)
        cleaned = clean_identifier(text, prefix)
        return ReconstructedIdentifier(cleaned, False, "text") if cleaned else None

    if type_tag is CellType.NUMBER:
        if display and ("E" in display or "e" in display):
            return reconstruct_from_digits(plain_digits(raw_value), prefix)
        source = display if display else plain_digits(raw_value)
        cleaned = clean_identifier(source, prefix)
        return ReconstructedIdentifier(cleaned, False, "number") if cleaned else None

    return None


def looks_like_identifier(value: Any, min_digits: int = MIN_IDENTIFIER_DIGITS) -> bool:
    """Row qualification check for the identifier column.

    Anything carrying at least ``min_digits`` digits (after expanding
    scientific notation) qualifies, so invalid identifiers still produce a
    record that a reviewer can see. Headers repeated mid-sheet, totals rows
    and notes do not.
    """
    text = as_text(value).strip()
    if not text:
        return False
    if is_scientific(text):
        expanded = expand_scientific(text)
        return expanded is not None and len(expanded) >= min_digits
    return len(_NON_DIGIT_RE.sub("", text)) >= min_digits
