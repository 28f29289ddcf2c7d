from __future__ import annotations

import logging
from collections.abc import Sequence

from ..db.store import DeviceStore, NewDevice, StoreError
from ..logging.error_log import ErrorLogBuffer
from ..models.device_record import DeviceRecord, DeviceStatus
from ..models.duplicate_check import DuplicateCheckResult
from ..models.error_record import ErrorRecord
from ..models.processing_result import IntakeResult
from .duplicates import DuplicateDetector

"""Submission persistence.

One submission = one transaction: duplicate checks, every device insert, the
duplicate audit rows and the counter recomputation either all land or none
do. A failure rolls everything back and the submission is reported failed;
there is never a partial device set.

Initial status: PENDING, or INFO_REQUESTED when the device cannot be
auto-approved (invalid identifier, duplicate, suspected precision loss).
"""

__all__ = [
    "IntakeError",
    "assign_status",
    "persist_submission",
    "persist_new_submission",
]

logger = logging.getLogger(__name__)


class IntakeError(Exception):
    """Raised for caller mistakes (records without validation attached)."""


def assign_status(record: DeviceRecord, duplicate: DuplicateCheckResult) -> DeviceStatus:
    if not record.is_valid or duplicate.is_duplicate or record.precision_loss:
        return DeviceStatus.INFO_REQUESTED
    return DeviceStatus.PENDING


def _check_all(
    records: Sequence[DeviceRecord],
    detector: DuplicateDetector,
) -> list[DuplicateCheckResult]:
    seen: set[str] = set()
    results: list[DuplicateCheckResult] = []
    for record in records:
        sanitized = record.validation.sanitized if record.validation else None
        if not record.is_valid or not sanitized:
            results.append(DuplicateCheckResult.not_found())
            continue
        if sanitized in seen:
            # 同一申請内の重複 (先行行はまだ ID を持たない)
            results.append(DuplicateCheckResult(is_duplicate=True, matched_status="IN_SUBMISSION"))
            continue
        seen.add(sanitized)
        results.append(detector.check_duplicate(sanitized))
    return results


def _validate_attached(records: Sequence[DeviceRecord]) -> None:
    for record in records:
        if record.validation is None:
            raise IntakeError(f"row {record.row_number}: validation not attached")


def _insert_submission(
    store: DeviceStore,
    submission_ref: int,
    records: Sequence[DeviceRecord],
    detector: DuplicateDetector,
) -> IntakeResult:
    checks = _check_all(records, detector)
    statuses = [assign_status(r, c) for r, c in zip(records, checks, strict=True)]
    devices = [NewDevice.from_record(r, s, c) for r, s, c in zip(records, statuses, checks, strict=True)]
    now = detector.clock.now()
    refs = store.insert_devices(submission_ref, devices, now)
    for device, ref, check in zip(devices, refs, checks, strict=True):
        if device.imei_valid:
            store.record_duplicate_check(device.imei, submission_ref, ref, check, now)
    counts = store.recompute_submission_counts(submission_ref)

    duplicates = sum(1 for c in checks if c.is_duplicate)
    info_requested = statuses.count(DeviceStatus.INFO_REQUESTED)
    logger.debug(
        "submission=%d inserted=%d duplicates=%d info_requested=%d",
        submission_ref,
        len(refs),
        duplicates,
        info_requested,
    )
    return IntakeResult(
        submission_ref=submission_ref,
        status="success",
        inserted=len(refs),
        duplicates=duplicates,
        info_requested=info_requested,
        record_refs=refs,
        counts=counts,
    )


def _rolled_back(
    submission_ref: int | None,
    label: str,
    error: StoreError,
    error_log: ErrorLogBuffer | None,
    file_name: str,
) -> IntakeResult:
    logger.error("submission=%s rolled back: %s", label, error)
    if error_log is not None:
        error_log.append(
            ErrorRecord.create(
                file=file_name,
                sheet="<FILE_LEVEL>",
                row=-1,
                error_type="PERSISTENCE_ERROR",
                message=str(error),
            )
        )
    return IntakeResult(submission_ref=submission_ref, status="failed", error=str(error))


def persist_submission(
    store: DeviceStore,
    submission_ref: int,
    records: Sequence[DeviceRecord],
    detector: DuplicateDetector,
    error_log: ErrorLogBuffer | None = None,
    file_name: str = "<SUBMISSION>",
) -> IntakeResult:
    """Insert a submission's devices atomically.

    Parameters
    ----------
    store: storage adapter (transaction boundary owner)
    submission_ref: id of an existing submission row
    records: extracted records with validation attached
    detector: duplicate detector over the same store
    error_log: receives an ErrorRecord when the submission is rolled back
    file_name: upload name for the error log

    Raises
    ------
    IntakeError: a record has no validation result attached
    """
    _validate_attached(records)
    try:
        with store.transaction():
            return _insert_submission(store, submission_ref, records, detector)
    except StoreError as e:
        return _rolled_back(submission_ref, str(submission_ref), e, error_log, file_name)


def persist_new_submission(
    store: DeviceStore,
    reference_number: str,
    records: Sequence[DeviceRecord],
    detector: DuplicateDetector,
    error_log: ErrorLogBuffer | None = None,
    file_name: str = "<SUBMISSION>",
) -> IntakeResult:
    """Like persist_submission, but the submission row is created (or looked
    up) inside the same transaction, so a rollback leaves no empty submission.
    """
    _validate_attached(records)
    try:
        with store.transaction():
            submission_ref = store.ensure_submission(reference_number)
            return _insert_submission(store, submission_ref, records, detector)
    except StoreError as e:
        return _rolled_back(None, reference_number, e, error_log, file_name)
