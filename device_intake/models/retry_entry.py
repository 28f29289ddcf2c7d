from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

"""RetryQueueEntry model and RetryStatus enum for downstream sync failures.

State transitions: QUEUED → RETRYING → (SUCCESS | FAILED)

- QUEUED: first failure captured, waiting for next_retry_at
- RETRYING: at least one retry attempt failed, waiting again
- SUCCESS: a retry succeeded, source record marked synced
- FAILED: retry_count reached max_retries; never retried automatically
"""

__all__ = [
    "RetryStatus",
    "RetryQueueEntry",
    "SweepResult",
]


class RetryStatus(Enum):
    QUEUED = "QUEUED"
    RETRYING = "RETRYING"
    FAILED = "FAILED"
    SUCCESS = "SUCCESS"

    @property
    def is_terminal(self) -> bool:
        return self in (RetryStatus.FAILED, RetryStatus.SUCCESS)


@dataclass(frozen=True)
class RetryQueueEntry:
    """Durable record of a failed downstream sync attempt.

    ``payload`` is a snapshot of the device record taken at enqueue time so a
    retry does not depend on re-fetching the record in its original state.
    """
    entry_id: int
    record_ref: int
    submission_ref: int | None
    retry_count: int
    max_retries: int
    next_retry_at: datetime
    last_error: str | None
    status: RetryStatus
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        return not self.status.is_terminal and self.next_retry_at <= now


@dataclass(frozen=True)
class SweepResult:
    """Entry ids grouped by what one sweep did with them."""
    succeeded: list[int] = field(default_factory=list)
    retried: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
