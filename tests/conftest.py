# Shared pytest fixtures
from __future__ import annotations

import tempfile
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from openpyxl import Workbook

from device_intake.db.store import InMemoryDeviceStore, NewDevice
from device_intake.logging.init import reset_logging
from device_intake.models.device_record import DeviceStatus

REPO_ROOT = Path(__file__).resolve().parent.parent


class FixedClock:
    """Manually advanced clock for duplicate windows and retry schedules."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """source_directory: ./data
extraction:
  header_scan_rows: 20
  identifier_prefix: "35"
duplicates:
  window_days: 90
retry:
  max_retries: 5
  initial_delay_minutes: 5
  max_delay_minutes: 240
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: rma
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "intake.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def store() -> InMemoryDeviceStore:
    return InMemoryDeviceStore()


@pytest.fixture(autouse=True)
def _reset_app_logger():
    yield
    reset_logging()


def write_xlsx(
    path: Path,
    rows: Sequence[Sequence[Any]],
    number_formats: dict[str, str] | None = None,
    sheet_title: str = "Devices",
) -> Path:
    """Write ``rows`` as-is (row 1 = rows[0]); ``number_formats`` maps "B3" -> format."""
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title
    for row in rows:
        ws.append(list(row))
    for coord, fmt in (number_formats or {}).items():
        ws[coord].number_format = fmt
    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(path)
    return path


@pytest.fixture()
def make_xlsx(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str, rows: Sequence[Sequence[Any]], number_formats: dict[str, str] | None = None) -> Path:
        return write_xlsx(tmp_path / name, rows, number_formats)

    return _make


@pytest.fixture()
def new_device() -> Callable[..., NewDevice]:
    """Factory for persisted-shape devices (valid PENDING by default)."""

    def _make(imei: str = "351454482579210", status: DeviceStatus = DeviceStatus.PENDING, **overrides: Any) -> NewDevice:
        values: dict[str, Any] = {
            "imei": imei,
            "imei_original": imei,
            "imei_valid": True,
            "validation_errors": None,
            "validation_warnings": None,
            "model": "iPhone 13",
            "storage": "128GB",
            "condition": "B",
            "issue_description": "Cracked screen",
            "issue_category": None,
            "requested_action": "Repair",
            "unit_price": 420.0,
            "repair_cost": None,
            "approval_status": status,
        }
        values.update(overrides)
        return NewDevice(**values)

    return _make
