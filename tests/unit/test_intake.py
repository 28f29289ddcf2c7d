from __future__ import annotations

import json

import pytest

from device_intake.db.store import DEVICE_COLUMNS, MONEY_COLUMNS, InMemoryDeviceStore, NewDevice, StoreError
from device_intake.logging.error_log import ErrorLogBuffer
from device_intake.models.device_record import DeviceRecord, DeviceStatus
from device_intake.models.duplicate_check import DuplicateCheckResult
from device_intake.services.duplicates import DuplicateDetector
from device_intake.services.extraction import extract_devices_from_rows
from device_intake.services.intake import IntakeError, assign_status, persist_new_submission, persist_submission

ROWS = [
    ["IMEI", "Model"],
    ["351454482579210", "iPhone 13"],
    ["99123456789", "Pixel 7"],
    [351454000000000, "Galaxy S22"],
    ["351454482579210", "iPhone 13 (again)"],
]


class FailingCountsStore(InMemoryDeviceStore):
    fail = True

    def recompute_submission_counts(self, submission_ref):
        if self.fail:
            raise StoreError("deadlock detected")
        return super().recompute_submission_counts(submission_ref)


def _persist(store, clock, rows=ROWS, reference="ACME-001", **kwargs):
    sub = store.ensure_submission(reference)
    detector = DuplicateDetector(store, clock)
    return persist_submission(store, sub, extract_devices_from_rows(rows), detector, **kwargs)


def test_statuses_and_counts(store, clock):
    result = _persist(store, clock)
    assert result.ok
    assert result.inserted == 4
    assert result.duplicates == 1
    assert result.info_requested == 3
    assert result.counts.total == 4
    assert result.counts.pending == 1

    valid, invalid, lossy, repeat = (store.devices[r] for r in result.record_refs)
    assert valid.status is DeviceStatus.PENDING
    assert invalid.status is DeviceStatus.INFO_REQUESTED
    assert lossy.status is DeviceStatus.INFO_REQUESTED
    assert repeat.status is DeviceStatus.INFO_REQUESTED
    assert repeat.device.is_duplicate is True
    assert repeat.device.duplicate_of_device_id is None
    assert store.submissions[result.submission_ref].counts == result.counts


def test_invalid_device_is_persisted_with_errors(store, clock):
    result = _persist(store, clock)
    invalid = store.devices[result.record_refs[1]].device
    assert invalid.imei == "99123456789"
    assert invalid.imei_original == "99123456789"
    assert invalid.imei_valid is False
    assert json.loads(invalid.validation_errors) == [
        "IMEI must be 15 digits (found 11)",
        "IMEI must start with 35",
    ]
    assert invalid.validation_warnings is None


def test_duplicate_audit_rows_for_valid_devices(store, clock):
    result = _persist(store, clock)
    assert [a.record_ref for a in store.audits] == [result.record_refs[0], result.record_refs[2], result.record_refs[3]]
    assert [a.is_duplicate for a in store.audits] == [False, False, True]


def test_second_submission_is_flagged_against_first(store, clock):
    first = _persist(store, clock, rows=[["IMEI"], ["351454482579210"]], reference="ACME-001")
    clock.advance(days=10)
    second = _persist(store, clock, rows=[["IMEI"], ["351454482579210"]], reference="ACME-002")
    assert second.ok and second.duplicates == 1
    stored = store.devices[second.record_refs[0]]
    assert stored.status is DeviceStatus.INFO_REQUESTED
    assert stored.device.is_duplicate is True
    assert stored.device.duplicate_of_device_id == first.record_refs[0]
    assert store.audits[-1].existing_submission_ref == first.submission_ref


def test_failure_rolls_back_whole_submission(clock, tmp_path):
    store = FailingCountsStore()
    error_log = ErrorLogBuffer(tmp_path / "logs")
    result = _persist(store, clock, error_log=error_log, file_name="acme.xlsx")
    assert not result.ok
    assert result.status == "failed"
    assert result.error == "deadlock detected"
    assert store.devices == {}
    assert store.audits == []
    (record,) = error_log.records
    assert record.error_type == "PERSISTENCE_ERROR"
    assert record.file == "acme.xlsx"
    assert record.row == -1
    assert record.sheet == "<FILE_LEVEL>"


def test_rollback_keeps_earlier_submissions(clock):
    store = FailingCountsStore()
    store.fail = False
    assert _persist(store, clock, rows=[["IMEI"], ["351454482579210"]]).ok
    store.fail = True
    result = _persist(store, clock, rows=[["IMEI"], ["351454482579228"]], reference="ACME-002")
    assert not result.ok
    assert len(store.devices) == 1
    assert store.submissions[1].counts.total == 1


def test_unvalidated_records_are_rejected(store, clock):
    record = DeviceRecord(
        identifier="351454482579210",
        identifier_raw="351454482579210",
        identifier_source_type="s",
        row_number=2,
    )
    with pytest.raises(IntakeError):
        persist_submission(store, store.ensure_submission("X"), [record], DuplicateDetector(store, clock))


def test_assign_status():
    (valid, invalid, lossy, _) = extract_devices_from_rows(ROWS)
    clear = DuplicateCheckResult.not_found()
    assert assign_status(valid, clear) is DeviceStatus.PENDING
    assert assign_status(valid, DuplicateCheckResult(is_duplicate=True, matched_record_ref=7)) is DeviceStatus.INFO_REQUESTED
    assert assign_status(invalid, clear) is DeviceStatus.INFO_REQUESTED
    assert assign_status(lossy, clear) is DeviceStatus.INFO_REQUESTED


def test_over_long_identifier_is_truncated_for_storage():
    (record,) = extract_devices_from_rows([["IMEI"], ["3514544825792100"]])
    device = NewDevice.from_record(record, DeviceStatus.INFO_REQUESTED)
    assert device.imei == "351454482579210"
    assert device.imei_original == "3514544825792100"
    assert device.imei_valid is False


def test_descriptive_values_fit_their_columns(clock):
    (record,) = extract_devices_from_rows(
        [
            ["IMEI", "Unit Price", "Storage", "Model"],
            ["351454482579210", "TBD", "128GB " * 5, "x" * 150],
        ]
    )
    # 抽出結果はレビュー用に元の文字列を保持する
    assert record.unit_price == "TBD"
    row = dict(zip(DEVICE_COLUMNS, NewDevice.from_record(record, DeviceStatus.PENDING).as_row(1, clock.now()), strict=True))
    assert row["unit_price"] is None
    assert row["storage"] == ("128GB " * 5)[:20]
    assert len(row["model"]) == 100


@pytest.mark.parametrize(
    "unit_price, repair_cost, expected",
    [
        (420, "N/A", (420.0, None)),
        ("TBD", 35.5, (None, 35.5)),
        (float("inf"), 1e9, (None, None)),
        (99_999_999.99, None, (99_999_999.99, None)),
        (True, -12.0, (None, -12.0)),
    ],
)
def test_money_columns_are_never_strings(clock, unit_price, repair_cost, expected):
    record = DeviceRecord(
        identifier="351454482579210",
        identifier_raw="351454482579210",
        identifier_source_type="text",
        row_number=2,
        unit_price=unit_price,
        repair_cost=repair_cost,
    )
    row = dict(zip(DEVICE_COLUMNS, NewDevice.from_record(record, DeviceStatus.PENDING).as_row(1, clock.now()), strict=True))
    assert tuple(row[c] for c in MONEY_COLUMNS) == expected
    assert not any(isinstance(row[c], str) for c in MONEY_COLUMNS)


def test_new_submission_rollback_leaves_no_submission_row(clock, tmp_path):
    store = FailingCountsStore()
    error_log = ErrorLogBuffer(tmp_path / "logs")
    result = persist_new_submission(
        store, "ACME-001", extract_devices_from_rows(ROWS), DuplicateDetector(store, clock), error_log, "acme.xlsx"
    )
    assert not result.ok
    assert result.submission_ref is None
    assert store.submissions == {}
    assert store.devices == {}
    assert error_log.records[0].error_type == "PERSISTENCE_ERROR"


def test_new_submission_reuses_existing_reference(store, clock):
    detector = DuplicateDetector(store, clock)
    first = persist_new_submission(store, "ACME-001", extract_devices_from_rows([["IMEI"], ["351454482579210"]]), detector)
    again = persist_new_submission(store, "ACME-001", extract_devices_from_rows([["IMEI"], ["351454482579228"]]), detector)
    assert first.ok and again.ok
    assert first.submission_ref == again.submission_ref
    assert list(store.submissions) == [first.submission_ref]
    assert again.counts.total == 2
