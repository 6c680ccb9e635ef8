from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure

from agent_runner.config import ViewerSettings
from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.models import (
    ExecutionCompletion,
    ExecutionStart,
    ExecutionStatus,
    ExecutionType,
    TargetState,
    TargetStatus,
)
from agent_runner.execution.view_model import (
    LOG_FILE_NOT_FOUND,
    ErrorMessage,
    LoadingMessage,
    LogContext,
    LogDataMessage,
    RunContext,
    ViewerMessage,
    build_log_payload,
    relative_path,
    run_context_for,
)
from agent_runner.execution.viewer import LiveLogViewer

pytestmark = [
    allure.epic("Live Log Viewer"),
    allure.feature("Log Subscriptions"),
]

FAST = ViewerSettings(debounce_seconds=0.01, poll_interval_seconds=0.05, watch_interval_seconds=0.01)
T0 = datetime(2026, 5, 1, 12, 0, 0, tzinfo=UTC)


def _line(payload: dict, at: datetime | None = None) -> str:
    if at is not None:
        payload = {**payload, "timestamp": at.isoformat().replace("+00:00", "Z")}
    return json.dumps(payload) + "\n"


def _assistant(text: str, at: datetime | None = None, tokens: int | None = None) -> str:
    message: dict = {"content": [{"type": "text", "text": text}]}
    if tokens is not None:
        message["usage"] = {"output_tokens": tokens}
    return _line({"type": "assistant", "message": message}, at)


def _context(log_file: Path, target_id: str = "reviewer", run: RunContext | None = None) -> LogContext:
    return LogContext(
        type=ExecutionType.AGENT,
        target_id=target_id,
        title=f"Agent {target_id}",
        log_file=log_file,
        run=run or RunContext(),
    )


def _data(messages: list[ViewerMessage]) -> list[LogDataMessage]:
    return [message for message in messages if isinstance(message, LogDataMessage)]


def test_payload_renders_one_entry_per_line(tmp_path: Path) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text(
        _line({"type": "system", "subtype": "init", "model": "m"})
        + "\n"
        + _assistant("hello", tokens=3)
        + "not json\n"
        + _line({"type": "error", "error": "oops"})
        + _line({"type": "user", "message": {"content": "ok"}}),
        "utf-8",
    )

    payload = build_log_payload(_context(log_file), workspace_root=tmp_path)

    assert [entry.status for entry in payload.entries] == [
        "system",
        "assistant",
        "system",
        "error",
        "user",
    ]
    assert [entry.index for entry in payload.entries] == [0, 1, 2, 3, 4]
    assert payload.entries[1].tokens == 3
    assert payload.stats.to_dict() == {
        "totalEntries": 5,
        "assistantCount": 1,
        "userCount": 1,
        "systemCount": 2,
        "errorCount": 1,
    }
    assert payload.header.relative_path == "run.jsonl"


def test_timing_deltas_skip_untimed_entries(tmp_path: Path) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text(
        _assistant("a", T0)
        + _assistant("b", T0 + timedelta(milliseconds=1500))
        + _assistant("c")
        + _assistant("d", T0 + timedelta(seconds=2)),
        "utf-8",
    )

    entries = build_log_payload(_context(log_file)).entries

    assert [entry.relative_to_start_ms for entry in entries] == [0, 1500, None, 2000]
    assert [entry.delta_previous_ms for entry in entries] == [None, 1500, None, 500]
    serialized = entries[1].to_dict()
    assert serialized["timestamp"] == "2026-05-01T12:00:01.500Z"
    assert serialized["payload"] == [{"text": "b", "isCode": False}]


def test_relative_path_outside_workspace_is_absolute(tmp_path: Path) -> None:
    outside = tmp_path.parent / "elsewhere.jsonl"

    assert relative_path(outside, tmp_path) == str(outside)
    assert relative_path(tmp_path / "a" / "b.jsonl", tmp_path) == str(Path("a") / "b.jsonl")
    assert relative_path(outside, None) == str(outside)


def test_run_context_merges_only_set_fields() -> None:
    base = RunContext(status="running", start_time="2026-01-01T00:00:00.000Z")

    merged = base.merged(RunContext(status="success", end_time="2026-01-01T00:01:00.000Z"))

    assert merged.to_dict() == {
        "status": "success",
        "startTime": "2026-01-01T00:00:00.000Z",
        "endTime": "2026-01-01T00:01:00.000Z",
    }
    assert base.status == "running"


def test_run_context_for_record_uses_metadata_error(ledger: HistoryLedger) -> None:
    record = ledger.begin_execution(
        ExecutionStart(type=ExecutionType.TODO, target_id="t", label="Todo", log_file="x.jsonl"),
    )
    ledger.complete_execution(
        record.id,
        ExecutionCompletion(ExecutionStatus.FAILED, metadata={"error": "exit 2"}),
    )

    context = run_context_for(record)

    assert context.status == "failed"
    assert context.error == "exit 2"
    assert context.end_time is not None
    assert run_context_for(None, error="boom") == RunContext(error="boom")


def test_attach_emits_loading_then_data(tmp_path: Path) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text(_assistant("one") + _assistant("two") + _assistant("three"), "utf-8")
    messages: list[ViewerMessage] = []

    async def scenario() -> None:
        viewer = LiveLogViewer(workspace_root=tmp_path, settings=FAST)
        subscription = viewer.attach(_context(log_file), messages.append)
        assert subscription.key == "agent:reviewer"
        assert viewer.get("agent:reviewer") is subscription
        viewer.close_all()
        assert subscription.closed is True

    asyncio.run(scenario())

    assert messages[0] == LoadingMessage(loading=True)
    assert isinstance(messages[1], LogDataMessage)
    assert messages[2] == LoadingMessage(loading=False)
    texts = [entry.payload[0].text for entry in messages[1].payload.entries]
    assert texts == ["one", "two", "three"]


def test_attach_creates_missing_log_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "later.jsonl"
    messages: list[ViewerMessage] = []

    async def scenario() -> None:
        viewer = LiveLogViewer(settings=FAST)
        viewer.attach(_context(log_file), messages.append)
        viewer.close_all()

    asyncio.run(scenario())

    assert log_file.exists()
    assert _data(messages)[0].payload.entries == []


def test_appended_lines_are_pushed_after_debounce(tmp_path: Path, wait_for) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text(_assistant("first"), "utf-8")
    messages: list[ViewerMessage] = []

    async def scenario() -> None:
        viewer = LiveLogViewer(settings=FAST)
        viewer.attach(_context(log_file), messages.append)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(_assistant("second"))
        await wait_for(lambda: len(_data(messages)[-1].payload.entries) == 2)
        viewer.close_all()

    asyncio.run(scenario())

    latest = _data(messages)[-1].payload
    assert [entry.payload[0].text for entry in latest.entries] == ["first", "second"]


def test_deleted_log_reports_not_found_and_drops_history(
    tmp_path: Path,
    ledger: HistoryLedger,
    wait_for,
) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text(_assistant("first"), "utf-8")
    ledger.begin_execution(
        ExecutionStart(
            type=ExecutionType.AGENT,
            target_id="reviewer",
            label="Agent reviewer",
            log_file=str(log_file),
        ),
    )
    messages: list[ViewerMessage] = []

    async def scenario() -> None:
        viewer = LiveLogViewer(ledger=ledger, settings=FAST)
        subscription = viewer.attach(_context(log_file), messages.append)
        log_file.unlink()
        await wait_for(lambda: subscription.closed)
        assert viewer.subscriptions() == []

    asyncio.run(scenario())

    assert messages[-1] == ErrorMessage(message=LOG_FILE_NOT_FOUND, not_found=True)
    assert ledger.get_all() == []


def test_update_run_context_reemits_header(tmp_path: Path) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text(_assistant("x"), "utf-8")
    messages: list[ViewerMessage] = []

    async def scenario() -> None:
        viewer = LiveLogViewer(settings=FAST)
        viewer.attach(_context(log_file, run=RunContext(status="running")), messages.append)
        assert viewer.update_run_context(ExecutionType.AGENT, "reviewer", RunContext(status="success"))
        assert not viewer.update_run_context(ExecutionType.TODO, "reviewer", RunContext())
        viewer.close_all()

    asyncio.run(scenario())

    assert _data(messages)[-1].payload.header.run.status == "success"


def test_status_listener_pushes_tracker_changes(tmp_path: Path, ledger: HistoryLedger) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text("", "utf-8")
    record = ledger.begin_execution(
        ExecutionStart(
            type=ExecutionType.AGENT,
            target_id="reviewer",
            label="Agent reviewer",
            log_file=str(log_file),
            version_hash="abc",
        ),
    )
    messages: list[ViewerMessage] = []

    async def scenario() -> None:
        viewer = LiveLogViewer(settings=FAST)
        viewer.attach(_context(log_file), messages.append)
        listener = viewer.status_listener(ExecutionType.AGENT)
        listener(TargetStatus(target_id="reviewer", state=TargetState.RUNNING), record)
        viewer.close_all()

    asyncio.run(scenario())

    run = _data(messages)[-1].payload.header.run
    assert run.status == "running"
    assert run.version_hash == "abc"


def test_reattach_keeps_one_subscription_and_merges_context(tmp_path: Path) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text(_assistant("x"), "utf-8")
    first: list[ViewerMessage] = []
    second: list[ViewerMessage] = []

    async def scenario() -> None:
        viewer = LiveLogViewer(settings=FAST)
        one = viewer.attach(_context(log_file, run=RunContext(version_hash="v1")), first.append)
        two = viewer.attach(_context(log_file, run=RunContext(status="success")), second.append)
        assert one is two
        assert len(viewer.subscriptions()) == 1
        viewer.close_all()

    asyncio.run(scenario())

    assert not any(isinstance(message, LoadingMessage) for message in second)
    run = _data(second)[-1].payload.header.run
    assert (run.version_hash, run.status) == ("v1", "success")


def test_subscriber_errors_are_contained(tmp_path: Path) -> None:
    log_file = tmp_path / "run.jsonl"
    log_file.write_text(_assistant("x"), "utf-8")

    def broken(_message: ViewerMessage) -> None:
        raise RuntimeError("display is gone")

    async def scenario() -> None:
        viewer = LiveLogViewer(settings=FAST)
        subscription = viewer.attach(_context(log_file), broken)
        assert subscription.updates == 1
        viewer.close_all()

    asyncio.run(scenario())
