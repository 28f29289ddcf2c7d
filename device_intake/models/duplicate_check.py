from __future__ import annotations

from dataclasses import dataclass

"""DuplicateCheckResult model.

Ephemeral: recomputed on demand at insert time and optionally written to the
duplicate_checks audit table by the store.
"""

__all__ = [
    "DuplicateCheckResult",
]


@dataclass(frozen=True)
class DuplicateCheckResult:
    is_duplicate: bool
    matched_record_ref: int | None = None
    matched_submission_ref: int | None = None
    matched_reference: str | None = None  # 既存申請の reference_number
    matched_status: str | None = None

    @staticmethod
    def not_found() -> DuplicateCheckResult:
        return DuplicateCheckResult(is_duplicate=False)
