from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from ..db.store import DeviceStore
from ..models.config_models import RetryConfig
from ..models.retry_entry import RetryQueueEntry, RetryStatus, SweepResult
from .clock import Clock

"""Durable retry queue for failed downstream syncs.

A sync failure on an accepted device never surfaces to the submitter; it is
recorded here and retried by a periodic sweep (the scheduler lives outside
this package and calls process_due()).

Schedule: first retry ``initial_delay`` after the failure, then the delay
doubles per failed retry up to ``max_delay``. After ``max_retries`` failed
retries the entry is FAILED and only an operator can act on it.

Every state change is a conditional update on (status, retry_count); a sweep
first claims an entry by pushing next_retry_at forward, so an overlapping
sweep sees it as not due and skips it.
"""

__all__ = [
    "SyncError",
    "SyncFn",
    "SyncRetryQueue",
]

logger = logging.getLogger(__name__)

SyncFn = Callable[[dict[str, Any]], Any]


class SyncError(Exception):
    """Raised by sync callables when the downstream system rejects a record."""


class SyncRetryQueue:
    def __init__(
        self,
        store: DeviceStore,
        clock: Clock,
        sync: SyncFn,
        config: RetryConfig | None = None,
        batch_limit: int = 100,
    ) -> None:
        self.store = store
        self.clock = clock
        self.sync = sync
        self.config = config or RetryConfig()
        self.batch_limit = batch_limit

    def delay_for(self, retry_count: int) -> timedelta:
        """Wait before the next attempt after ``retry_count`` failed retries."""
        minutes = self.config.initial_delay_minutes * (2 ** max(retry_count - 1, 0))
        return timedelta(minutes=min(minutes, self.config.max_delay_minutes))

    def enqueue(self, record_ref: int, submission_ref: int | None, error_message: str) -> RetryQueueEntry:
        """Queue a failed sync (or reset the open entry for the same device)."""
        now = self.clock.now()
        next_at = now + self.delay_for(0)
        payload = self.store.get_device_payload(record_ref)

        existing = self.store.find_open_retry_entry(record_ref)
        entry = None
        if existing is not None:
            entry = self.store.requeue_retry_entry(existing.entry_id, next_at, error_message, payload, now)
        if entry is None:
            entry = self.store.insert_retry_entry(
                record_ref,
                submission_ref,
                self.config.max_retries,
                next_at,
                error_message,
                payload,
                now,
            )
        logger.warning(
            "sync failed device=%d queued entry=%d next_retry_at=%s error=%s",
            record_ref,
            entry.entry_id,
            entry.next_retry_at.isoformat(),
            error_message,
        )
        return entry

    def attempt(self, record_ref: int, submission_ref: int | None) -> bool:
        """First sync attempt for an accepted device; failures go to the queue."""
        payload = self.store.get_device_payload(record_ref)
        try:
            self.sync(payload)
        except Exception as e:
            self.enqueue(record_ref, submission_ref, str(e) or type(e).__name__)
            return False
        self.store.mark_device_synced(record_ref, self.clock.now())
        return True

    def process_due(self) -> SweepResult:
        """Retry every due entry once."""
        now = self.clock.now()
        result = SweepResult()
        for entry in self.store.due_retry_entries(now, self.batch_limit):
            lease_until = now + self.delay_for(entry.retry_count + 1)
            if not self.store.claim_retry_entry(entry.entry_id, entry.status, entry.retry_count, now, lease_until):
                logger.debug("entry=%d already claimed, skipped", entry.entry_id)
                continue
            self._retry(entry, result)
        if result.succeeded or result.retried or result.failed:
            logger.info(
                "retry sweep succeeded=%d retried=%d failed=%d",
                len(result.succeeded),
                len(result.retried),
                len(result.failed),
            )
        return result

    def _retry(self, entry: RetryQueueEntry, result: SweepResult) -> None:
        now = self.clock.now()
        try:
            self.sync(entry.payload)
        except Exception as e:
            error = str(e) or type(e).__name__
            count = entry.retry_count + 1
            if count >= entry.max_retries:
                status, next_at = RetryStatus.FAILED, now
            else:
                status, next_at = RetryStatus.RETRYING, now + self.delay_for(count)
            moved = self.store.transition_retry_entry(
                entry.entry_id,
                entry.status,
                entry.retry_count,
                status=status,
                retry_count=count,
                next_retry_at=next_at,
                last_error=error,
                now=now,
            )
            if not moved:
                logger.debug("entry=%d changed concurrently, outcome dropped", entry.entry_id)
                return
            if status is RetryStatus.FAILED:
                logger.error(
                    "sync permanently failed device=%d entry=%d retries=%d error=%s",
                    entry.record_ref,
                    entry.entry_id,
                    count,
                    error,
                )
                result.failed.append(entry.entry_id)
            else:
                result.retried.append(entry.entry_id)
            return

        moved = self.store.transition_retry_entry(
            entry.entry_id,
            entry.status,
            entry.retry_count,
            status=RetryStatus.SUCCESS,
            retry_count=entry.retry_count,
            next_retry_at=now,
            last_error=None,
            now=now,
        )
        if moved:
            self.store.mark_device_synced(entry.record_ref, now)
            result.succeeded.append(entry.entry_id)

    def failed_entries(self) -> list[RetryQueueEntry]:
        return self.store.failed_retry_entries()
