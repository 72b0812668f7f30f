"""Tests for the SQLite execution journal."""

import json

import pytest

import keeper_db
from keeper_errors import ClassifiedError, ErrorKind, SkipReason
from tx_executor import JobResult, JobState


@pytest.fixture
def journal(tmp_path, monkeypatch):
    monkeypatch.setattr(keeper_db, "DB_FILE", None)
    keeper_db.init_db(str(tmp_path / "keeper.db"))
    yield keeper_db
    monkeypatch.setattr(keeper_db, "DB_FILE", None)


def test_disabled_journal_is_a_noop(monkeypatch) -> None:
    monkeypatch.setattr(keeper_db, "DB_FILE", None)
    assert keeper_db.is_enabled() is False
    keeper_db.log_event("INFO", "nothing happens")
    keeper_db.record_job_result("run", "liquidation", JobResult(JobState.SKIPPED))


def _rows(journal, sql):
    conn = journal.get_connection()
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


def test_records_job_results(journal) -> None:
    done = JobResult(JobState.DONE, processed=["0x1", "0x2"], leftover=["0x3"], tx_hash="0xabc",
                     gas_used=21_000, actual_cost=21_000 * 10**9)
    failed = JobResult(JobState.FAILED, leftover=["0x1"], tx_hash="0xdef",
                       error=ClassifiedError(ErrorKind.LOGIC, "receipt_status_failed"), actual_cost=5)
    skipped = JobResult(JobState.SKIPPED, leftover=["0x9"], skip_reason=SkipReason.GAS_CAP)
    journal.record_job_result("r1", "liquidation", done)
    journal.record_job_result("r1", "liquidation", failed)
    journal.record_job_result("r2", "redemption", skipped)

    rows = _rows(journal, "SELECT * FROM executions ORDER BY id DESC")
    assert [r["state"] for r in rows] == ["SKIPPED", "FAILED", "DONE"]
    assert rows[0]["skip_reason"] == "GAS_CAP"
    assert rows[0]["agent"] == "redemption"
    assert rows[1]["error_type"] == "logic"
    assert rows[1]["tx_hash"] == "0xdef"
    assert rows[2]["processed_count"] == 2 and rows[2]["leftover_count"] == 1
    assert rows[2]["actual_cost_wei"] == str(21_000 * 10**9)
    assert json.loads(rows[2]["detail"])["txHash"] == "0xabc"


def test_log_event(journal) -> None:
    journal.log_event("error", "first")
    journal.log_event("info", "second")
    rows = _rows(journal, "SELECT level, message FROM logs ORDER BY id")
    assert [(r["level"], r["message"]) for r in rows] == [("error", "first"), ("info", "second")]
