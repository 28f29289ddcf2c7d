from __future__ import annotations

import pytest

from device_intake.models.device_record import DeviceStatus
from device_intake.services.duplicates import DuplicateDetector

IMEI = "351454482579210"


@pytest.fixture()
def detector(store, clock):
    return DuplicateDetector(store, clock)


def _insert(store, clock, new_device, status=DeviceStatus.PENDING, reference="ACME-001", imei=IMEI):
    sub = store.ensure_submission(reference)
    (ref,) = store.insert_devices(sub, [new_device(imei, status)], clock.now())
    return sub, ref


def test_unknown_identifier_is_not_duplicate(detector):
    result = detector.check_duplicate(IMEI)
    assert result.is_duplicate is False
    assert result.matched_record_ref is None


def test_live_record_in_window_is_duplicate(store, clock, detector, new_device):
    sub, ref = _insert(store, clock, new_device)
    clock.advance(days=30)
    result = detector.check_duplicate(IMEI)
    assert result.is_duplicate
    assert result.matched_record_ref == ref
    assert result.matched_submission_ref == sub
    assert result.matched_reference == "ACME-001"
    assert result.matched_status == "PENDING"


@pytest.mark.parametrize(
    "status",
    [DeviceStatus.PENDING, DeviceStatus.UNDER_REVIEW, DeviceStatus.APPROVED, DeviceStatus.INFO_REQUESTED],
)
def test_every_live_status_counts(store, clock, detector, new_device, status):
    _insert(store, clock, new_device, status)
    assert detector.check_duplicate(IMEI).is_duplicate


@pytest.mark.parametrize("status", [DeviceStatus.DENIED, DeviceStatus.SYNCED])
def test_terminal_statuses_are_ignored(store, clock, detector, new_device, status):
    _insert(store, clock, new_device, status)
    assert not detector.check_duplicate(IMEI).is_duplicate


def test_status_change_after_insert_is_respected(store, clock, detector, new_device):
    _, ref = _insert(store, clock, new_device)
    store.set_device_status(ref, DeviceStatus.DENIED)
    assert not detector.check_duplicate(IMEI).is_duplicate


def test_window_boundary(store, clock, detector, new_device):
    _insert(store, clock, new_device)
    clock.advance(days=89, hours=23)
    assert detector.check_duplicate(IMEI).is_duplicate
    clock.advance(hours=1)
    # 作成日時がちょうど 90 日前 -> 対象外
    assert not detector.check_duplicate(IMEI).is_duplicate


def test_custom_window(store, clock, new_device):
    _insert(store, clock, new_device)
    clock.advance(days=8)
    assert not DuplicateDetector(store, clock, window_days=7).check_duplicate(IMEI).is_duplicate


def test_exclude_id_skips_own_record(store, clock, detector, new_device):
    _, ref = _insert(store, clock, new_device)
    assert not detector.check_duplicate(IMEI, exclude_id=ref).is_duplicate


def test_latest_match_is_reported(store, clock, detector, new_device):
    _insert(store, clock, new_device, reference="ACME-001")
    clock.advance(days=1)
    _, latest = _insert(store, clock, new_device, reference="ACME-002")
    result = detector.check_duplicate(IMEI)
    assert result.matched_record_ref == latest
    assert result.matched_reference == "ACME-002"


def test_empty_identifier_is_never_duplicate(detector):
    assert not detector.check_duplicate("").is_duplicate
    assert not detector.check_duplicate(None).is_duplicate


def test_override_records_reason_and_reviewer(store, clock, detector, new_device):
    _, ref = _insert(store, clock, new_device)
    detector.override(ref, "Customer re-sent the same unit after repair", "admin@example.com")
    stored = store.devices[ref]
    assert stored.duplicate_override is True
    assert stored.duplicate_override_reason == "Customer re-sent the same unit after repair"
    assert stored.reviewed_by == "admin@example.com"
    assert stored.reviewed_at == clock.now()


def test_override_requires_reason(store, clock, detector, new_device):
    _, ref = _insert(store, clock, new_device)
    with pytest.raises(ValueError):
        detector.override(ref, "  ", "admin@example.com")
