from __future__ import annotations

import logging
from datetime import timedelta

from ..db.store import DeviceStore
from ..models.duplicate_check import DuplicateCheckResult
from .clock import Clock

"""Cross-submission duplicate detection.

An identifier is a duplicate when a live record (PENDING, UNDER_REVIEW,
APPROVED, INFO_REQUESTED) with the same identifier was created within the
window (90 days by default). The result is advisory: the caller still inserts
the record and flags it. Denied and synced records never count.
"""

__all__ = [
    "DEFAULT_WINDOW_DAYS",
    "DuplicateDetector",
]

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 90


class DuplicateDetector:
    def __init__(self, store: DeviceStore, clock: Clock, window_days: int = DEFAULT_WINDOW_DAYS) -> None:
        self.store = store
        self.clock = clock
        self.window = timedelta(days=window_days)

    def check_duplicate(self, identifier: str | None, exclude_id: int | None = None) -> DuplicateCheckResult:
        """Look up a live record with ``identifier`` inside the window.

        ``exclude_id`` skips the caller's own record when re-checking an
        already persisted device.
        """
        if not identifier:
            return DuplicateCheckResult.not_found()
        since = self.clock.now() - self.window
        result = self.store.find_live_duplicate(identifier, since, exclude_id)
        if result.is_duplicate:
            logger.info(
                "duplicate imei=%s existing_device=%s submission=%s status=%s",
                identifier,
                result.matched_record_ref,
                result.matched_reference,
                result.matched_status,
            )
        return result

    def override(self, record_ref: int, reason: str, by: str) -> None:
        """Admin override: keep the record, record who accepted the duplicate and why."""
        if not reason.strip():
            raise ValueError("override reason is required")
        self.store.override_duplicate(record_ref, reason, by, self.clock.now())
        logger.info("duplicate override device=%d by=%s", record_ref, by)
