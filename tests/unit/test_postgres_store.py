from __future__ import annotations

from datetime import UTC, datetime

import psycopg2
import pytest

from device_intake.db.postgres_store import RETRY_COLUMNS, PostgresDeviceStore
from device_intake.db.store import DEVICE_COLUMNS, StoreError
from device_intake.models.device_record import DeviceStatus
from device_intake.models.retry_entry import RetryStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class FakeCursor:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.rowcount = conn.rowcount
        self.closed = False

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))
        if self.conn.fail_on and self.conn.fail_on in sql:
            raise psycopg2.OperationalError("server closed the connection unexpectedly")

    def fetchone(self):
        return self.conn.results.pop(0) if self.conn.results else None

    def fetchall(self):
        return self.conn.results.pop(0) if self.conn.results else []

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self) -> None:
        self.executed: list[tuple[str, object]] = []
        self.results: list = []
        self.rowcount = 1
        self.fail_on: str | None = None
        self.cursors: list[FakeCursor] = []

    def cursor(self):
        cur = FakeCursor(self)
        self.cursors.append(cur)
        return cur

    def statements(self) -> list[str]:
        return [sql for sql, _ in self.executed]


@pytest.fixture()
def conn():
    return FakeConnection()


@pytest.fixture()
def pg(conn):
    return PostgresDeviceStore(conn)


def _retry_row(**overrides):
    values = {
        "id": 7,
        "device_id": 11,
        "submission_id": 3,
        "retry_count": 0,
        "max_retries": 5,
        "next_retry_at": NOW,
        "error_message": "timeout",
        "status": "QUEUED",
        "payload": '{"imei": "351454482579210"}',
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return tuple(values[c] for c in RETRY_COLUMNS)


def test_transaction_commits(pg, conn):
    with pg.transaction():
        with pg.transaction():
            pass
    assert conn.statements() == ["BEGIN", "COMMIT"]
    assert all(c.closed for c in conn.cursors)


def test_transaction_rolls_back_on_error(pg, conn):
    with pytest.raises(StoreError):
        with pg.transaction():
            raise StoreError("insert failed")
    assert conn.statements() == ["BEGIN", "ROLLBACK"]


def test_driver_errors_become_store_errors(pg, conn):
    conn.fail_on = "rma_submissions"
    with pytest.raises(StoreError, match="server closed"):
        pg.ensure_submission("ACME-001")


def test_ensure_submission_reuses_existing(pg, conn):
    conn.results = [(4,)]
    assert pg.ensure_submission("ACME-001") == 4
    assert len(conn.executed) == 1
    conn.results = [None, (5,)]
    assert pg.ensure_submission("ACME-002") == 5
    assert conn.statements()[-1].startswith("INSERT INTO rma_submissions")


def test_insert_devices_uses_batch_insert(pg, monkeypatch, new_device):
    import device_intake.db.batch_insert as bi

    captured = {}

    def fake_execute_values(cursor, sql, rows, page_size=1000, fetch=False):
        captured["sql"] = sql
        captured["rows"] = rows
        return [(101,), (102,)]

    monkeypatch.setattr(bi, "execute_values", fake_execute_values)
    refs = pg.insert_devices(3, [new_device(), new_device("351454482579228")], NOW)
    assert refs == [101, 102]
    assert captured["sql"].startswith("INSERT INTO rma_devices")
    assert captured["sql"].endswith('RETURNING "id"')
    row = dict(zip(DEVICE_COLUMNS, captured["rows"][1], strict=True))
    assert row["submission_id"] == 3
    assert row["imei"] == "351454482579228"
    assert row["approval_status"] == "PENDING"
    assert row["created_at"] == NOW


def test_insert_devices_failure_is_store_error(pg, monkeypatch, new_device):
    import device_intake.db.batch_insert as bi

    def boom(*args, **kwargs):
        raise psycopg2.IntegrityError("null value in column")

    monkeypatch.setattr(bi, "execute_values", boom)
    with pytest.raises(StoreError, match="device insert failed"):
        pg.insert_devices(3, [new_device()], NOW)


def test_find_live_duplicate(pg, conn):
    assert pg.find_live_duplicate("351454482579210", NOW).is_duplicate is False
    sql, params = conn.executed[0]
    assert "approval_status = ANY(%s)" in sql
    assert params[0] == "351454482579210"
    assert params[3] == ["APPROVED", "INFO_REQUESTED", "PENDING", "UNDER_REVIEW"]
    assert params[4] == NOW

    conn.results = [(9, 2, "ACME-001", "APPROVED")]
    result = pg.find_live_duplicate("351454482579210", NOW, exclude_id=12)
    assert result.is_duplicate
    assert (result.matched_record_ref, result.matched_submission_ref) == (9, 2)
    assert result.matched_reference == "ACME-001"
    assert conn.executed[-1][1][1:3] == (12, 12)


def test_override_duplicate_updates_device_and_audit(pg, conn):
    pg.override_duplicate(9, "same unit re-sent", "admin", NOW)
    statements = conn.statements()
    assert statements[0].startswith("UPDATE rma_devices SET duplicate_override = TRUE")
    assert statements[1].startswith("UPDATE duplicate_checks SET admin_override = TRUE")
    conn.rowcount = 0
    with pytest.raises(StoreError):
        pg.override_duplicate(404, "x", "admin", NOW)


def test_recompute_submission_counts(pg, conn):
    conn.results = [(4, 1, 2, 1)]
    counts = pg.recompute_submission_counts(3)
    assert (counts.total, counts.pending, counts.approved, counts.denied) == (4, 1, 2, 1)
    with pytest.raises(StoreError):
        pg.recompute_submission_counts(99)


def test_get_device_payload(pg, conn):
    conn.results = [({"id": 11, "imei": "351454482579210"},)]
    assert pg.get_device_payload(11) == {"id": 11, "imei": "351454482579210"}
    conn.results = [('{"id": 12}',)]
    assert pg.get_device_payload(12) == {"id": 12}
    with pytest.raises(StoreError):
        pg.get_device_payload(13)


def test_mark_device_synced(pg, conn):
    pg.mark_device_synced(11, NOW)
    sql, params = conn.executed[0]
    assert "synced = TRUE" in sql
    assert params == (DeviceStatus.SYNCED.value, NOW, 11)


def test_insert_retry_entry_parses_returned_row(pg, conn):
    conn.results = [_retry_row()]
    entry = pg.insert_retry_entry(11, 3, 5, NOW, "timeout", {"imei": "351454482579210"}, NOW)
    assert entry.entry_id == 7
    assert entry.status is RetryStatus.QUEUED
    assert entry.payload == {"imei": "351454482579210"}
    assert '"imei": "351454482579210"' in conn.executed[0][1][7]


def test_requeue_returns_none_for_terminal_entry(pg, conn):
    assert pg.requeue_retry_entry(7, NOW, "timeout", {}, NOW) is None
    conn.results = [_retry_row(retry_count=0, error_message="refused")]
    entry = pg.requeue_retry_entry(7, NOW, "refused", {}, NOW)
    assert entry is not None and entry.last_error == "refused"


def test_due_and_failed_listings(pg, conn):
    conn.results = [[_retry_row(), _retry_row(id=8, status="RETRYING", retry_count=2)]]
    due = pg.due_retry_entries(NOW, limit=10)
    assert [e.entry_id for e in due] == [7, 8]
    assert due[1].status is RetryStatus.RETRYING
    assert conn.executed[0][1] == (["QUEUED", "RETRYING"], NOW, 10)

    conn.results = [[_retry_row(status="FAILED", retry_count=5, payload={"imei": "x"})]]
    (failed,) = pg.failed_retry_entries()
    assert failed.status is RetryStatus.FAILED and failed.payload == {"imei": "x"}


def test_claim_and_transition_are_conditional(pg, conn):
    assert pg.claim_retry_entry(7, RetryStatus.QUEUED, 0, NOW, NOW) is True
    sql, params = conn.executed[-1]
    assert "AND status = %s AND retry_count = %s AND next_retry_at <= %s" in sql
    assert params[2:] == (7, "QUEUED", 0, NOW)

    conn.rowcount = 0
    moved = pg.transition_retry_entry(
        7,
        RetryStatus.QUEUED,
        0,
        status=RetryStatus.RETRYING,
        retry_count=1,
        next_retry_at=NOW,
        last_error="503",
        now=NOW,
    )
    assert moved is False
    assert "COALESCE(%s, error_message)" in conn.executed[-1][0]
