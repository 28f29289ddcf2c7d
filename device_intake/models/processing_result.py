from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

"""Processing result models for submission intake.

FileStat / ProcessingResult aggregate a CLI run over several uploaded files;
IntakeResult is the outcome of persisting one submission's device batch;
SubmissionCounts is the recomputed aggregate stored on the submission row.
"""

__all__ = [
    "SubmissionCounts",
    "IntakeResult",
    "FileStat",
    "ProcessingResult",
]


@dataclass(frozen=True)
class SubmissionCounts:
    """Submission-level aggregates. Always recomputed from the device set."""
    total: int = 0
    pending: int = 0
    approved: int = 0
    denied: int = 0


@dataclass(frozen=True)
class IntakeResult:
    """Outcome of persisting one submission (all-or-nothing)."""
    submission_ref: int | None  # 申請行の作成前に失敗した場合は None
    status: str  # success/failed
    inserted: int = 0
    duplicates: int = 0  # DB 上の既存レコードと重複
    info_requested: int = 0  # 自動承認ブロック件数
    record_refs: list[int] = field(default_factory=list)
    counts: SubmissionCounts | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class FileStat:
    """Per-file extraction/persistence statistics."""
    file_name: str
    status: str  # success/failed
    devices: int  # 抽出デバイス数
    valid: int
    invalid: int
    duplicates: int  # 同一ファイル内 + 既存 DB 重複
    warnings: int  # 有効だが警告付き
    elapsed_seconds: float
    error: str | None = None


@dataclass(frozen=True)
class ProcessingResult:
    """Aggregated results for one CLI run (SUMMARY line source)."""
    success_files: int
    failed_files: int
    total_devices: int
    valid_devices: int
    invalid_devices: int
    duplicate_devices: int
    warning_devices: int
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    file_stats: list[FileStat] | None = None
