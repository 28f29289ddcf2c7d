from __future__ import annotations

import copy
import json
import logging
import math
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol

from ..models.device_record import LIVE_STATUSES, DeviceRecord, DeviceStatus
from ..models.duplicate_check import DuplicateCheckResult
from ..models.processing_result import SubmissionCounts
from ..models.retry_entry import RetryQueueEntry, RetryStatus

"""Storage port for devices, submissions, duplicate audit and the retry queue.

DeviceStore is what the intake service, the duplicate detector and the retry
queue talk to. Two adapters implement it:
- InMemoryDeviceStore (this module): tests and CLI mock mode
- PostgresDeviceStore (postgres_store.py): psycopg2

Persisted device columns are listed in DEVICE_COLUMNS; the payload snapshot
used by the retry queue is keyed by the same names.
"""

__all__ = [
    "DEVICE_COLUMNS",
    "TEXT_COLUMN_WIDTHS",
    "MONEY_COLUMNS",
    "OPEN_RETRY_STATUSES",
    "StoreError",
    "NewDevice",
    "DuplicateAudit",
    "DeviceStore",
    "InMemoryDeviceStore",
]

logger = logging.getLogger(__name__)

DEVICE_COLUMNS: tuple[str, ...] = (
    "submission_id",
    "imei",
    "imei_original",
    "imei_valid",
    "validation_errors",
    "validation_warnings",
    "model",
    "storage",
    "condition",
    "issue_description",
    "issue_category",
    "requested_action",
    "unit_price",
    "repair_cost",
    "approval_status",
    "is_duplicate",
    "duplicate_of_device_id",
    "created_at",
)

OPEN_RETRY_STATUSES = frozenset({RetryStatus.QUEUED, RetryStatus.RETRYING})

# imei 列は VARCHAR(15) NOT NULL
IDENTIFIER_COLUMN_WIDTH = 15

# schema.sql の VARCHAR 幅
TEXT_COLUMN_WIDTHS = {
    "model": 100,
    "storage": 20,
    "condition": 50,
    "issue_category": 100,
    "requested_action": 50,
}
MONEY_COLUMNS = ("unit_price", "repair_cost")
# NUMERIC(10,2)
MONEY_LIMIT = 10**8


def _column_value(column: str, value: Any) -> Any:
    """Fit a descriptive value to its column: money as float or None, text cut to width."""
    if value is None:
        return None
    if column in MONEY_COLUMNS:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if math.isfinite(value) and abs(round(value, 2)) < MONEY_LIMIT:
                return float(value)
        # "TBD" など数値化できない値は保存しない
        logger.debug("%s=%r is not a storable amount, stored as NULL", column, value)
        return None
    width = TEXT_COLUMN_WIDTHS.get(column)
    if width is not None:
        return str(value)[:width]
    return value


class StoreError(Exception):
    """Raised by store adapters when a read or write fails."""


@dataclass(frozen=True)
class NewDevice:
    """Persisted shape of one device, before the store assigns an id."""
    imei: str
    imei_original: str
    imei_valid: bool
    validation_errors: str | None  # JSON 配列文字列
    validation_warnings: str | None
    model: str | None
    storage: str | None
    condition: str | None
    issue_description: str | None
    issue_category: str | None
    requested_action: str | None
    unit_price: float | None
    repair_cost: float | None
    approval_status: DeviceStatus
    is_duplicate: bool = False
    duplicate_of_device_id: int | None = None

    @staticmethod
    def from_record(
        record: DeviceRecord,
        status: DeviceStatus,
        duplicate: DuplicateCheckResult | None = None,
    ) -> NewDevice:
        validation = record.validation
        sanitized = (validation.sanitized if validation else record.identifier) or ""
        errors = list(validation.errors) if validation else []
        warnings = list(validation.warnings) if validation else []
        fields = {name: _column_value(name, value) for name, value in record.descriptive_fields().items()}
        return NewDevice(
            imei=sanitized[:IDENTIFIER_COLUMN_WIDTH],
            imei_original="" if record.identifier_raw is None else str(record.identifier_raw),
            imei_valid=record.is_valid,
            validation_errors=json.dumps(errors, ensure_ascii=False) if errors else None,
            validation_warnings=json.dumps(warnings, ensure_ascii=False) if warnings else None,
            approval_status=status,
            is_duplicate=bool(duplicate and duplicate.is_duplicate),
            duplicate_of_device_id=duplicate.matched_record_ref if duplicate else None,
            **fields,
        )

    def as_row(self, submission_ref: int, created_at: datetime) -> tuple[Any, ...]:
        """Values in DEVICE_COLUMNS order."""
        values = {
            "submission_id": submission_ref,
            "imei": self.imei,
            "imei_original": self.imei_original,
            "imei_valid": self.imei_valid,
            "validation_errors": self.validation_errors,
            "validation_warnings": self.validation_warnings,
            "model": self.model,
            "storage": self.storage,
            "condition": self.condition,
            "issue_description": self.issue_description,
            "issue_category": self.issue_category,
            "requested_action": self.requested_action,
            "unit_price": self.unit_price,
            "repair_cost": self.repair_cost,
            "approval_status": self.approval_status.value,
            "is_duplicate": self.is_duplicate,
            "duplicate_of_device_id": self.duplicate_of_device_id,
            "created_at": created_at,
        }
        return tuple(values[c] for c in DEVICE_COLUMNS)


@dataclass(frozen=True)
class DuplicateAudit:
    """One duplicate check, kept for audit."""
    imei: str
    submission_ref: int
    record_ref: int | None
    is_duplicate: bool
    existing_submission_ref: int | None
    existing_record_ref: int | None
    checked_at: datetime


class DeviceStore(Protocol):
    def transaction(self) -> Any: ...

    def ensure_submission(self, reference_number: str) -> int: ...

    def insert_devices(self, submission_ref: int, devices: Sequence[NewDevice], created_at: datetime) -> list[int]: ...

    def find_live_duplicate(
        self, identifier: str, since: datetime, exclude_id: int | None = None
    ) -> DuplicateCheckResult: ...

    def record_duplicate_check(
        self,
        identifier: str,
        submission_ref: int,
        record_ref: int | None,
        result: DuplicateCheckResult,
        checked_at: datetime,
    ) -> None: ...

    def override_duplicate(self, record_ref: int, reason: str, by: str, at: datetime) -> None: ...

    def recompute_submission_counts(self, submission_ref: int) -> SubmissionCounts: ...

    def get_device_payload(self, record_ref: int) -> dict[str, Any]: ...

    def mark_device_synced(self, record_ref: int, at: datetime) -> None: ...

    def find_open_retry_entry(self, record_ref: int) -> RetryQueueEntry | None: ...

    def insert_retry_entry(
        self,
        record_ref: int,
        submission_ref: int | None,
        max_retries: int,
        next_retry_at: datetime,
        last_error: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> RetryQueueEntry: ...

    def requeue_retry_entry(
        self,
        entry_id: int,
        next_retry_at: datetime,
        last_error: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> RetryQueueEntry | None: ...

    def due_retry_entries(self, now: datetime, limit: int = 100) -> list[RetryQueueEntry]: ...

    def claim_retry_entry(
        self,
        entry_id: int,
        expected_status: RetryStatus,
        expected_count: int,
        now: datetime,
        lease_until: datetime,
    ) -> bool: ...

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
    ) -> bool: ...

    def failed_retry_entries(self) -> list[RetryQueueEntry]: ...


@dataclass
class _StoredDevice:
    record_ref: int
    submission_ref: int
    device: NewDevice
    created_at: datetime
    status: DeviceStatus
    duplicate_override: bool = False
    duplicate_override_reason: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    synced_at: datetime | None = None


@dataclass
class _Submission:
    reference_number: str
    counts: SubmissionCounts


class InMemoryDeviceStore:
    """DeviceStore kept in dicts. transaction() snapshots and restores on error."""

    def __init__(self) -> None:
        self.devices: dict[int, _StoredDevice] = {}
        self.submissions: dict[int, _Submission] = {}
        self.retry_entries: dict[int, RetryQueueEntry] = {}
        self.audits: list[DuplicateAudit] = []
        self._next_id = {"device": 1, "submission": 1, "retry": 1}
        self._in_transaction = False

    def _new_id(self, kind: str) -> int:
        value = self._next_id[kind]
        self._next_id[kind] = value + 1
        return value

    def _state(self) -> tuple[Any, ...]:
        return (self.devices, self.submissions, self.retry_entries, self.audits, self._next_id)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._in_transaction:
            # ネストは外側のトランザクションに合流
            yield
            return
        snapshot = copy.deepcopy(self._state())
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self.devices, self.submissions, self.retry_entries, self.audits, self._next_id = snapshot
            raise
        finally:
            self._in_transaction = False

    # --- submissions / devices ---

    def ensure_submission(self, reference_number: str) -> int:
        for ref, sub in self.submissions.items():
            if sub.reference_number == reference_number:
                return ref
        ref = self._new_id("submission")
        self.submissions[ref] = _Submission(reference_number, SubmissionCounts())
        return ref

    def insert_devices(self, submission_ref: int, devices: Sequence[NewDevice], created_at: datetime) -> list[int]:
        if submission_ref not in self.submissions:
            raise StoreError(f"submission not found: {submission_ref}")
        refs: list[int] = []
        for device in devices:
            ref = self._new_id("device")
            self.devices[ref] = _StoredDevice(
                record_ref=ref,
                submission_ref=submission_ref,
                device=device,
                created_at=created_at,
                status=device.approval_status,
            )
            refs.append(ref)
        return refs

    def find_live_duplicate(
        self, identifier: str, since: datetime, exclude_id: int | None = None
    ) -> DuplicateCheckResult:
        matches = [
            d
            for d in self.devices.values()
            if d.device.imei == identifier
            and d.record_ref != exclude_id
            and d.status in LIVE_STATUSES
            and d.created_at > since
        ]
        if not matches:
            return DuplicateCheckResult.not_found()
        latest = max(matches, key=lambda d: (d.created_at, d.record_ref))
        return DuplicateCheckResult(
            is_duplicate=True,
            matched_record_ref=latest.record_ref,
            matched_submission_ref=latest.submission_ref,
            matched_reference=self.submissions[latest.submission_ref].reference_number,
            matched_status=latest.status.value,
        )

    def record_duplicate_check(
        self,
        identifier: str,
        submission_ref: int,
        record_ref: int | None,
        result: DuplicateCheckResult,
        checked_at: datetime,
    ) -> None:
        self.audits.append(
            DuplicateAudit(
                imei=identifier,
                submission_ref=submission_ref,
                record_ref=record_ref,
                is_duplicate=result.is_duplicate,
                existing_submission_ref=result.matched_submission_ref,
                existing_record_ref=result.matched_record_ref,
                checked_at=checked_at,
            )
        )

    def override_duplicate(self, record_ref: int, reason: str, by: str, at: datetime) -> None:
        stored = self._device(record_ref)
        stored.duplicate_override = True
        stored.duplicate_override_reason = reason
        stored.reviewed_by = by
        stored.reviewed_at = at

    def recompute_submission_counts(self, submission_ref: int) -> SubmissionCounts:
        if submission_ref not in self.submissions:
            raise StoreError(f"submission not found: {submission_ref}")
        statuses = [d.status for d in self.devices.values() if d.submission_ref == submission_ref]
        counts = SubmissionCounts(
            total=len(statuses),
            pending=statuses.count(DeviceStatus.PENDING),
            approved=statuses.count(DeviceStatus.APPROVED),
            denied=statuses.count(DeviceStatus.DENIED),
        )
        self.submissions[submission_ref].counts = counts
        return counts

    def get_device_payload(self, record_ref: int) -> dict[str, Any]:
        stored = self._device(record_ref)
        row = stored.device.as_row(stored.submission_ref, stored.created_at)
        payload = dict(zip(DEVICE_COLUMNS, row, strict=True))
        payload["id"] = stored.record_ref
        payload["approval_status"] = stored.status.value
        payload["created_at"] = stored.created_at.isoformat()
        return payload

    def mark_device_synced(self, record_ref: int, at: datetime) -> None:
        stored = self._device(record_ref)
        stored.status = DeviceStatus.SYNCED
        stored.synced_at = at

    def device_status(self, record_ref: int) -> DeviceStatus:
        return self._device(record_ref).status

    def set_device_status(self, record_ref: int, status: DeviceStatus) -> None:
        """Admin workflow stand-in (tests and mock mode only)."""
        self._device(record_ref).status = status

    def _device(self, record_ref: int) -> _StoredDevice:
        try:
            return self.devices[record_ref]
        except KeyError:
            raise StoreError(f"device not found: {record_ref}") from None

    # --- retry queue ---

    def find_open_retry_entry(self, record_ref: int) -> RetryQueueEntry | None:
        open_entries = [
            e for e in self.retry_entries.values() if e.record_ref == record_ref and e.status in OPEN_RETRY_STATUSES
        ]
        return max(open_entries, key=lambda e: e.entry_id) if open_entries else None

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
        entry = RetryQueueEntry(
            entry_id=self._new_id("retry"),
            record_ref=record_ref,
            submission_ref=submission_ref,
            retry_count=0,
            max_retries=max_retries,
            next_retry_at=next_retry_at,
            last_error=last_error,
            status=RetryStatus.QUEUED,
            payload=copy.deepcopy(payload),
            created_at=now,
            updated_at=now,
        )
        self.retry_entries[entry.entry_id] = entry
        return entry

    def requeue_retry_entry(
        self,
        entry_id: int,
        next_retry_at: datetime,
        last_error: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> RetryQueueEntry | None:
        entry = self.retry_entries.get(entry_id)
        if entry is None or entry.status not in OPEN_RETRY_STATUSES:
            return None
        updated = replace(
            entry,
            status=RetryStatus.QUEUED,
            retry_count=0,
            next_retry_at=next_retry_at,
            last_error=last_error,
            payload=copy.deepcopy(payload),
            updated_at=now,
        )
        self.retry_entries[entry_id] = updated
        return updated

    def due_retry_entries(self, now: datetime, limit: int = 100) -> list[RetryQueueEntry]:
        due = [e for e in self.retry_entries.values() if e.is_due(now)]
        due.sort(key=lambda e: (e.next_retry_at, e.entry_id))
        return due[:limit]

    def claim_retry_entry(
        self,
        entry_id: int,
        expected_status: RetryStatus,
        expected_count: int,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        entry = self.retry_entries.get(entry_id)
        if (
            entry is None
            or entry.status is not expected_status
            or entry.retry_count != expected_count
            or entry.next_retry_at > now
        ):
            return False
        self.retry_entries[entry_id] = replace(entry, next_retry_at=lease_until, updated_at=now)
        return True

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
        entry = self.retry_entries.get(entry_id)
        if entry is None or entry.status is not expected_status or entry.retry_count != expected_count:
            return False
        self.retry_entries[entry_id] = replace(
            entry,
            status=status,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            last_error=last_error if last_error is not None else entry.last_error,
            updated_at=now,
        )
        return True

    def failed_retry_entries(self) -> list[RetryQueueEntry]:
        failed = [e for e in self.retry_entries.values() if e.status is RetryStatus.FAILED]
        return sorted(failed, key=lambda e: e.entry_id)
