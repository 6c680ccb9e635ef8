from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.models import (
    ExecutionCompletion,
    ExecutionStart,
    ExecutionStatus,
    ExecutionType,
)

pytestmark = [
    allure.epic("Execution Pipeline"),
    allure.feature("History Ledger"),
]


def _start(
    target_id: str = "reviewer",
    *,
    log_file: str = "logs/reviewer.jsonl",
    type_: ExecutionType = ExecutionType.AGENT,
    metadata: dict | None = None,
) -> ExecutionStart:
    return ExecutionStart(
        type=type_,
        target_id=target_id,
        label=f"Agent {target_id}",
        log_file=log_file,
        metadata=metadata,
    )


def test_missing_document_is_created_empty(tmp_path: Path) -> None:
    history_file = tmp_path / "state" / "history.json"

    ledger = HistoryLedger(history_file)

    assert ledger.get_all() == []
    assert json.loads(history_file.read_text("utf-8")) == []


def test_begin_then_complete_sets_end_after_start(ledger: HistoryLedger) -> None:
    record = ledger.begin_execution(_start())

    assert record.status is ExecutionStatus.RUNNING
    assert record.end_time is None

    completed = ledger.complete_execution(record.id, ExecutionCompletion(ExecutionStatus.SUCCESS))

    assert completed is not None
    assert completed.status is ExecutionStatus.SUCCESS
    assert completed.end_time is not None
    assert completed.end_time >= completed.start_time


def test_end_time_before_start_is_clamped(ledger: HistoryLedger) -> None:
    record = ledger.begin_execution(_start())

    completed = ledger.complete_execution(
        record.id,
        ExecutionCompletion(ExecutionStatus.FAILED, end_time=record.start_time - timedelta(hours=1)),
    )

    assert completed is not None
    assert completed.end_time == completed.start_time


def test_complete_unknown_id_returns_none(ledger: HistoryLedger) -> None:
    assert ledger.complete_execution("missing", ExecutionCompletion(ExecutionStatus.SUCCESS)) is None


def test_complete_rejects_non_terminal_status(ledger: HistoryLedger) -> None:
    record = ledger.begin_execution(_start())

    with pytest.raises(ValueError, match="Not a terminal"):
        ledger.complete_execution(record.id, ExecutionCompletion(ExecutionStatus.RUNNING))


def test_second_terminal_transition_is_ignored(ledger: HistoryLedger) -> None:
    record = ledger.begin_execution(_start())
    ledger.complete_execution(record.id, ExecutionCompletion(ExecutionStatus.STOPPED))

    again = ledger.complete_execution(
        record.id,
        ExecutionCompletion(ExecutionStatus.FAILED, metadata={"error": "late"}),
    )

    assert again is not None
    assert again.status is ExecutionStatus.STOPPED
    assert again.metadata is None


def test_completion_metadata_is_merged(ledger: HistoryLedger) -> None:
    record = ledger.begin_execution(_start(metadata={"tags": ["review"], "error": "old"}))

    completed = ledger.complete_execution(
        record.id,
        ExecutionCompletion(ExecutionStatus.FAILED, metadata={"error": "boom", "exitCode": 2}),
    )

    assert completed is not None
    assert completed.metadata == {"tags": ["review"], "error": "boom", "exitCode": 2}


def test_update_metadata_overwrites_same_keys(ledger: HistoryLedger) -> None:
    record = ledger.begin_execution(_start(metadata={"a": 1, "b": 2}))

    updated = ledger.update_metadata(record.id, {"b": 3, "c": 4})

    assert updated is not None
    assert updated.metadata == {"a": 1, "b": 3, "c": 4}
    assert ledger.update_metadata("missing", {"x": 1}) is None


def test_history_is_filtered_and_newest_first(ledger: HistoryLedger) -> None:
    first = ledger.begin_execution(_start())
    second = ledger.begin_execution(_start())
    third = ledger.begin_execution(_start())
    ledger.begin_execution(_start("other"))
    ledger.begin_execution(_start("reviewer", type_=ExecutionType.TODO))
    # start times can collide on coarse clocks
    first.start_time -= timedelta(seconds=2)
    second.start_time -= timedelta(seconds=1)

    history = ledger.get_history(ExecutionType.AGENT, "reviewer")

    assert [record.id for record in history] == [third.id, second.id, first.id]
    assert [record.id for record in ledger.get_history(ExecutionType.AGENT, "reviewer", 2)] == [
        third.id,
        second.id,
    ]
    assert ledger.get_history(ExecutionType.AGENT, "nobody") == []


def test_ids_are_unique(ledger: HistoryLedger) -> None:
    ids = {ledger.begin_execution(_start()).id for _ in range(20)}

    assert len(ids) == 20


def test_reload_round_trips_records(tmp_path: Path) -> None:
    history_file = tmp_path / "history.json"
    ledger = HistoryLedger(history_file)
    record = ledger.begin_execution(_start(metadata={"tags": ["a"]}))
    ledger.complete_execution(record.id, ExecutionCompletion(ExecutionStatus.SUCCESS))

    reloaded = HistoryLedger(history_file).get(record.id)

    assert reloaded is not None
    assert reloaded.status is ExecutionStatus.SUCCESS
    assert reloaded.metadata == {"tags": ["a"]}
    assert reloaded.label == "Agent reviewer"
    raw = json.loads(history_file.read_text("utf-8"))[0]
    assert raw["targetId"] == "reviewer"
    assert raw["logFile"] == "logs/reviewer.jsonl"
    assert raw["startTime"].endswith("Z")
    assert "sourceFile" not in raw


def test_cleanup_removes_records_with_missing_logs(tmp_path: Path, ledger: HistoryLedger) -> None:
    present = tmp_path / "present.jsonl"
    present.write_text("", "utf-8")
    kept = ledger.begin_execution(_start(log_file=str(present)))
    ledger.begin_execution(_start(log_file=str(tmp_path / "gone.jsonl")))

    assert ledger.cleanup_invalid_records() == 1
    assert ledger.cleanup_invalid_records() == 0
    assert [record.id for record in ledger.get_all()] == [kept.id]


def test_remove_by_log_file_matches_normalized_paths(tmp_path: Path, ledger: HistoryLedger) -> None:
    log_file = tmp_path / "logs" / "run.jsonl"
    ledger.begin_execution(_start(log_file=str(log_file)))
    ledger.begin_execution(_start(log_file=str(log_file)))
    other = ledger.begin_execution(_start(log_file=str(tmp_path / "other.jsonl")))

    assert ledger.remove_by_log_file(tmp_path / "logs" / ".." / "logs" / "run.jsonl") is True
    assert ledger.remove_by_log_file(log_file) is False
    assert [record.id for record in ledger.get_all()] == [other.id]


def test_remove_by_id(ledger: HistoryLedger) -> None:
    record = ledger.begin_execution(_start())

    assert ledger.remove_by_id(record.id) is record
    assert ledger.remove_by_id(record.id) is None
    assert ledger.get(record.id) is None


@pytest.mark.parametrize("content", ["{}", '"text"', "not json", "42"])
def test_unusable_document_loads_as_empty_history(tmp_path: Path, content: str) -> None:
    history_file = tmp_path / "history.json"
    history_file.write_text(content, "utf-8")

    assert HistoryLedger(history_file).get_all() == []


def test_malformed_entries_are_skipped(tmp_path: Path) -> None:
    history_file = tmp_path / "history.json"
    valid = {
        "id": "ok",
        "type": "todo",
        "targetId": "tasks.md-0",
        "label": "Todo",
        "logFile": "logs/todo.jsonl",
        "status": "success",
        "startTime": "2026-01-01T00:00:00.000Z",
        "endTime": "2026-01-01T00:00:05.000Z",
    }
    history_file.write_text(
        json.dumps(
            [
                valid,
                {"id": "no-type"},
                {**valid, "id": "bad-status", "status": "exploded"},
                {**valid, "id": "bad-time", "startTime": "yesterday"},
                "string entry",
            ],
        ),
        "utf-8",
    )

    records = HistoryLedger(history_file).get_all()

    assert [record.id for record in records] == ["ok"]
    assert records[0].type is ExecutionType.TODO
    assert (records[0].end_time - records[0].start_time).total_seconds() == 5


def test_recover_stale_runs_marks_running_as_failed(ledger: HistoryLedger) -> None:
    stale = ledger.begin_execution(_start())
    active = ledger.begin_execution(_start())
    done = ledger.begin_execution(_start())
    ledger.complete_execution(done.id, ExecutionCompletion(ExecutionStatus.SUCCESS))

    assert ledger.recover_stale_runs(active_ids=frozenset({active.id})) == 1

    assert stale.status is ExecutionStatus.FAILED
    assert stale.metadata == {"error": "interrupted"}
    assert active.status is ExecutionStatus.RUNNING
    assert done.status is ExecutionStatus.SUCCESS


def test_failed_write_marks_ledger_dirty_and_flush_retries(tmp_path: Path) -> None:
    history_file = tmp_path / "history.json"
    ledger = HistoryLedger(history_file)
    history_file.unlink()
    history_file.mkdir()

    ledger.begin_execution(_start())

    assert ledger.dirty is True
    history_file.rmdir()
    ledger.flush()
    assert ledger.dirty is False
    assert len(json.loads(history_file.read_text("utf-8"))) == 1
