from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import psycopg2

from ..models.device_record import LIVE_STATUSES, DeviceStatus
from ..models.duplicate_check import DuplicateCheckResult
from ..models.processing_result import SubmissionCounts
from ..models.retry_entry import RetryQueueEntry, RetryStatus
from .batch_insert import BatchInsertError, BatchMetrics, batch_insert
from .store import DEVICE_COLUMNS, OPEN_RETRY_STATUSES, NewDevice, StoreError

"""PostgreSQL adapter for the DeviceStore port (psycopg2).

The connection is expected in autocommit mode: transaction() issues explicit
BEGIN/COMMIT/ROLLBACK around a submission, and every retry-queue update
outside it is a single conditional statement (current status + retry count in
the WHERE clause), so two overlapping sweeps cannot both move one entry.

Tables: rma_submissions, rma_devices, duplicate_checks, sync_retry_queue
(see schema.sql).
"""

__all__ = [
    "PostgresDeviceStore",
]

logger = logging.getLogger(__name__)

RETRY_COLUMNS = (
    "id",
    "device_id",
    "submission_id",
    "retry_count",
    "max_retries",
    "next_retry_at",
    "error_message",
    "status",
    "payload",
    "created_at",
    "updated_at",
)
_RETRY_SELECT = ", ".join(RETRY_COLUMNS)

_LIVE_STATUS_VALUES = sorted(s.value for s in LIVE_STATUSES)
_OPEN_RETRY_VALUES = sorted(s.value for s in OPEN_RETRY_STATUSES)

_DUPLICATE_SQL = """
SELECT d.id, d.submission_id, s.reference_number, d.approval_status
FROM rma_devices d
JOIN rma_submissions s ON s.id = d.submission_id
WHERE d.imei = %s
  AND (%s::integer IS NULL OR d.id <> %s)
  AND d.approval_status = ANY(%s)
  AND d.created_at > %s
ORDER BY d.created_at DESC, d.id DESC
LIMIT 1
"""

_COUNTS_SQL = """
UPDATE rma_submissions s
SET total_devices = c.total,
    pending_count = c.pending,
    approved_count = c.approved,
    denied_count = c.denied,
    updated_at = NOW()
FROM (
    SELECT COUNT(*) AS total,
           COUNT(*) FILTER (WHERE approval_status = 'PENDING') AS pending,
           COUNT(*) FILTER (WHERE approval_status = 'APPROVED') AS approved,
           COUNT(*) FILTER (WHERE approval_status = 'DENIED') AS denied
    FROM rma_devices
    WHERE submission_id = %s
) c
WHERE s.id = %s
RETURNING c.total, c.pending, c.approved, c.denied
"""


def _entry_from_row(row: Sequence[Any]) -> RetryQueueEntry:
    values = dict(zip(RETRY_COLUMNS, row, strict=True))
    payload = values["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return RetryQueueEntry(
        entry_id=values["id"],
        record_ref=values["device_id"],
        submission_ref=values["submission_id"],
        retry_count=values["retry_count"],
        max_retries=values["max_retries"],
        next_retry_at=values["next_retry_at"],
        last_error=values["error_message"],
        status=RetryStatus(values["status"]),
        payload=payload or {},
        created_at=values["created_at"],
        updated_at=values["updated_at"],
    )


class PostgresDeviceStore:
    def __init__(self, conn: Any, page_size: int = 1000) -> None:
        self._conn = conn
        self._page_size = page_size
        self._in_transaction = False

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        cur = self._conn.cursor()
        try:
            yield cur
        except psycopg2.Error as e:
            raise StoreError(str(e).strip()) from e
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._in_transaction:
            yield
            return
        with self._cursor() as cur:
            cur.execute("BEGIN")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            try:
                with self._cursor() as cur:
                    cur.execute("ROLLBACK")
            except StoreError as rollback_error:
                logger.error("rollback failed: %s", rollback_error)
            raise
        else:
            with self._cursor() as cur:
                cur.execute("COMMIT")
        finally:
            self._in_transaction = False

    # --- submissions / devices ---

    def ensure_submission(self, reference_number: str) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT id FROM rma_submissions WHERE reference_number = %s", (reference_number,))
            row = cur.fetchone()
            if row is not None:
                return row[0]
            cur.execute(
                "INSERT INTO rma_submissions (reference_number) VALUES (%s) RETURNING id",
                (reference_number,),
            )
            return cur.fetchone()[0]

    def insert_devices(self, submission_ref: int, devices: Sequence[NewDevice], created_at: datetime) -> list[int]:
        def _log_metrics(m: BatchMetrics) -> None:
            logger.debug("insert rma_devices rows=%d elapsed=%.3fs", m.batch_size, m.elapsed_seconds)

        with self._cursor() as cur:
            try:
                result = batch_insert(
                    cur,
                    "rma_devices",
                    DEVICE_COLUMNS,
                    [d.as_row(submission_ref, created_at) for d in devices],
                    returning=["id"],
                    page_size=self._page_size,
                    metrics_callback=_log_metrics,
                )
            except BatchInsertError as e:
                raise StoreError(f"device insert failed: {e}") from e
        return [r[0] for r in result.returned_values or []]

    def find_live_duplicate(
        self, identifier: str, since: datetime, exclude_id: int | None = None
    ) -> DuplicateCheckResult:
        with self._cursor() as cur:
            cur.execute(_DUPLICATE_SQL, (identifier, exclude_id, exclude_id, _LIVE_STATUS_VALUES, since))
            row = cur.fetchone()
        if row is None:
            return DuplicateCheckResult.not_found()
        return DuplicateCheckResult(
            is_duplicate=True,
            matched_record_ref=row[0],
            matched_submission_ref=row[1],
            matched_reference=row[2],
            matched_status=row[3],
        )

    def record_duplicate_check(
        self,
        identifier: str,
        submission_ref: int,
        record_ref: int | None,
        result: DuplicateCheckResult,
        checked_at: datetime,
    ) -> None:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO duplicate_checks (imei, submission_id, device_id, is_duplicate,"
                " existing_submission_id, existing_device_id, checked_at)"
                " VALUES (%s, %s, %s, %s, %s, %s, %s)",
                (
                    identifier,
                    submission_ref,
                    record_ref,
                    result.is_duplicate,
                    result.matched_submission_ref,
                    result.matched_record_ref,
                    checked_at,
                ),
            )

    def override_duplicate(self, record_ref: int, reason: str, by: str, at: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE rma_devices SET duplicate_override = TRUE, duplicate_override_reason = %s,"
                " reviewed_by = %s, reviewed_at = %s WHERE id = %s",
                (reason, by, at, record_ref),
            )
            if cur.rowcount != 1:
                raise StoreError(f"device not found: {record_ref}")
            cur.execute(
                "UPDATE duplicate_checks SET admin_override = TRUE, override_reason = %s,"
                " override_by = %s WHERE device_id = %s",
                (reason, by, record_ref),
            )

    def recompute_submission_counts(self, submission_ref: int) -> SubmissionCounts:
        with self._cursor() as cur:
            cur.execute(_COUNTS_SQL, (submission_ref, submission_ref))
            row = cur.fetchone()
        if row is None:
            raise StoreError(f"submission not found: {submission_ref}")
        return SubmissionCounts(total=row[0], pending=row[1], approved=row[2], denied=row[3])

    def get_device_payload(self, record_ref: int) -> dict[str, Any]:
        with self._cursor() as cur:
            cur.execute("SELECT row_to_json(d) FROM rma_devices d WHERE d.id = %s", (record_ref,))
            row = cur.fetchone()
        if row is None:
            raise StoreError(f"device not found: {record_ref}")
        payload = row[0]
        return json.loads(payload) if isinstance(payload, str) else dict(payload)

    def mark_device_synced(self, record_ref: int, at: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE rma_devices SET approval_status = %s, synced = TRUE, synced_at = %s WHERE id = %s",
                (DeviceStatus.SYNCED.value, at, record_ref),
            )

    # --- retry queue ---

    def find_open_retry_entry(self, record_ref: int) -> RetryQueueEntry | None:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_RETRY_SELECT} FROM sync_retry_queue"
                " WHERE device_id = %s AND status = ANY(%s) ORDER BY id DESC LIMIT 1",
                (record_ref, _OPEN_RETRY_VALUES),
            )
            row = cur.fetchone()
        return _entry_from_row(row) if row is not None else None

    def insert_retry_entry(
        self,
        record_ref: int,
        submission_ref: int | None,
        max_retries: int,
        next_retry_at: datetime,
        last_error: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> RetryQueueEntry:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO sync_retry_queue (device_id, submission_id, retry_count, max_retries,"
                " next_retry_at, error_message, last_error_at, status, payload, created_at, updated_at)"
                f" VALUES (%s, %s, 0, %s, %s, %s, %s, %s, %s, %s, %s) RETURNING {_RETRY_SELECT}",
                (
                    record_ref,
                    submission_ref,
                    max_retries,
                    next_retry_at,
                    last_error,
                    now,
                    RetryStatus.QUEUED.value,
                    json.dumps(payload, ensure_ascii=False, default=str),
                    now,
                    now,
                ),
            )
            return _entry_from_row(cur.fetchone())

    def requeue_retry_entry(
        self,
        entry_id: int,
        next_retry_at: datetime,
        last_error: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> RetryQueueEntry | None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE sync_retry_queue SET status = %s, retry_count = 0, next_retry_at = %s,"
                " error_message = %s, last_error_at = %s, payload = %s, updated_at = %s"
                f" WHERE id = %s AND status = ANY(%s) RETURNING {_RETRY_SELECT}",
                (
                    RetryStatus.QUEUED.value,
                    next_retry_at,
                    last_error,
                    now,
                    json.dumps(payload, ensure_ascii=False, default=str),
                    now,
                    entry_id,
                    _OPEN_RETRY_VALUES,
                ),
            )
            row = cur.fetchone()
        return _entry_from_row(row) if row is not None else None

    def due_retry_entries(self, now: datetime, limit: int = 100) -> list[RetryQueueEntry]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_RETRY_SELECT} FROM sync_retry_queue"
                " WHERE status = ANY(%s) AND next_retry_at <= %s ORDER BY next_retry_at, id LIMIT %s",
                (_OPEN_RETRY_VALUES, now, limit),
            )
            rows = cur.fetchall()
        return [_entry_from_row(r) for r in rows]

    def claim_retry_entry(
        self,
        entry_id: int,
        expected_status: RetryStatus,
        expected_count: int,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE sync_retry_queue SET next_retry_at = %s, updated_at = %s"
                " WHERE id = %s AND status = %s AND retry_count = %s AND next_retry_at <= %s",
                (lease_until, now, entry_id, expected_status.value, expected_count, now),
            )
            return cur.rowcount == 1

    def transition_retry_entry(
        self,
        entry_id: int,
        expected_status: RetryStatus,
        expected_count: int,
        *,
        status: RetryStatus,
        retry_count: int,
        next_retry_at: datetime,
        last_error: str | None,
        now: datetime,
    ) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE sync_retry_queue SET status = %s, retry_count = %s, next_retry_at = %s,"
                " error_message = COALESCE(%s, error_message),"
                " last_error_at = CASE WHEN %s IS NULL THEN last_error_at ELSE %s END,"
                " updated_at = %s"
                " WHERE id = %s AND status = %s AND retry_count = %s",
                (
                    status.value,
                    retry_count,
                    next_retry_at,
                    last_error,
                    last_error,
                    now,
                    now,
                    entry_id,
                    expected_status.value,
                    expected_count,
                ),
            )
            return cur.rowcount == 1

    def failed_retry_entries(self) -> list[RetryQueueEntry]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_RETRY_SELECT} FROM sync_retry_queue WHERE status = %s ORDER BY id",
                (RetryStatus.FAILED.value,),
            )
            rows = cur.fetchall()
        return [_entry_from_row(r) for r in rows]
