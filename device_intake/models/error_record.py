from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for error logging.

Structured record written as JSON Lines for structural extraction failures
(no header row) and persistence failures (rolled back submissions). Row -1 is
the sentinel for sheet/file-level errors where no specific row applies.

The record adheres to the JSON schema contract defined in:
specs/001-device-intake/contracts/error_log_schema.json
"""

__all__ = [
    "ErrorRecord",
]


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        file: uploaded filename being processed
        sheet: sheet name within the file ("<FILE_LEVEL>" when not applicable)
        row: row number (1-based). Use -1 for sheet/file-level errors
        error_type: error classification in UPPER_SNAKE_CASE format
        message: error description (DB message, extraction failure reason)
    """
    timestamp: str  # ISO8601 UTC
    file: str
    sheet: str
    row: int  # 行番号。不明な場合 -1 許容
    error_type: str  # UPPER_SNAKE
    message: str

    @staticmethod
    def create(file: str, sheet: str, row: int, error_type: str, message: str) -> ErrorRecord:
        """Create a new ErrorRecord with current UTC timestamp."""
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            file=file,
            sheet=sheet,
            row=row,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        """Serialize ErrorRecord to JSON Lines format (no extra keys)."""
        return json.dumps(asdict(self), ensure_ascii=False)
