"""Controllers for agent-runner CLI commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_runner.config import Settings
from agent_runner.execution.command import CommandOptions
from agent_runner.execution.engine import ProcessExecutionEngine
from agent_runner.execution.history_report import record_duration, render_history
from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.models import (
    ExecutionRecord,
    ExecutionType,
    StreamMessage,
)
from agent_runner.execution.tracker import RunOutcome
from agent_runner.execution.view_model import (
    ErrorMessage,
    LogContext,
    LogDataMessage,
    LogEntryView,
    LogViewPayload,
    ViewerMessage,
    build_log_payload,
    run_context_for,
)
from agent_runner.execution.viewer import LiveLogViewer
from agent_runner.targets.agents import AgentRunner
from agent_runner.targets.todos import TodoItem, TodoRunner

logger = logging.getLogger(__name__)

LineSink = Callable[[str], None]


@dataclass(slots=True)
class AgentsListCommand:
    """CLI inputs for agent listing."""

    workspace: Path | None


@dataclass(slots=True)
class AgentRunCommand:
    """CLI inputs for running one agent."""

    workspace: Path | None
    name: str
    stream: bool = True


@dataclass(slots=True)
class TodosListCommand:
    """CLI inputs for todo listing."""

    workspace: Path | None
    show_completed: bool = True


@dataclass(slots=True)
class TodoRunCommand:
    """CLI inputs for running one todo item."""

    workspace: Path | None
    todo_id: str
    stream: bool = True


@dataclass(slots=True)
class HistoryListCommand:
    """CLI inputs for history listing."""

    workspace: Path | None
    type_: ExecutionType | None = None
    target_id: str | None = None
    limit: int | None = None


@dataclass(slots=True)
class HistoryRecordCommand:
    """CLI inputs for commands addressing one history record."""

    workspace: Path | None
    record_id: str


@dataclass(slots=True)
class HistoryMaintenanceCommand:
    """CLI inputs for cleanup and recovery."""

    workspace: Path | None


@dataclass(slots=True)
class LogsViewCommand:
    """CLI inputs for log viewing."""

    workspace: Path | None
    record_id: str | None = None
    log_file: Path | None = None
    follow: bool = False
    seconds: float | None = None


@dataclass(slots=True)
class RunResult:
    """Outcome of a run command: printed lines plus success flag."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


class _EchoNotifier:
    def __init__(self, sink: LineSink) -> None:
        self._sink = sink

    def info(self, message: str) -> None:
        self._sink(message)

    def warning(self, message: str) -> None:
        self._sink(f"Warning: {message}")

    def error(self, message: str) -> None:
        self._sink(f"Error: {message}")


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    ledger: HistoryLedger
    engine: ProcessExecutionEngine


class CliController:
    """Coordinates agent-runner command execution."""

    def list_agents(self, command: AgentsListCommand) -> list[str]:
        with _runtime(command.workspace) as runtime:
            runner = AgentRunner(settings=runtime.settings, engine=runtime.engine, ledger=runtime.ledger)
            agents = runner.agents()
            if not agents:
                return [f"No agents found in {runtime.settings.agent_dir}"]
            lines = [f"Agents ({len(agents)}):"]
            for agent in agents:
                last = runner.history(agent.name, limit=1)
                last_status = last[0].status.value if last else "never run"
                tags = f" [{', '.join(agent.tags)}]" if agent.tags else ""
                lines.append(f"- {agent.name}{tags}: {agent.description or '-'} (last: {last_status})")
            return lines

    def run_agent(self, command: AgentRunCommand, sink: LineSink) -> RunResult:
        with _runtime(command.workspace) as runtime:
            runner = AgentRunner(
                settings=runtime.settings,
                engine=runtime.engine,
                ledger=runtime.ledger,
                notifier=_EchoNotifier(sink),
            )
            spec = runner.run_spec(command.name)
            sink(f"Log file: {spec.log_file}")
            outcome = _run_until_interrupted(
                runner.tracker.start(spec, on_message=_stream_to(sink) if command.stream else None),
                sink,
            )
            return _run_result(outcome)

    def list_todos(self, command: TodosListCommand) -> list[str]:
        with _runtime(command.workspace) as runtime:
            runner = TodoRunner(settings=runtime.settings, engine=runtime.engine, ledger=runtime.ledger)
            roots = runner.todos()
            if not roots:
                return [f"No TODO items found in {runtime.settings.todo_dir}"]
            lines: list[str] = []
            for root in roots:
                lines.extend(_todo_lines(root, depth=0, show_completed=command.show_completed))
            return lines

    def run_todo(self, command: TodoRunCommand, sink: LineSink) -> RunResult:
        with _runtime(command.workspace) as runtime:
            runner = TodoRunner(
                settings=runtime.settings,
                engine=runtime.engine,
                ledger=runtime.ledger,
                notifier=_EchoNotifier(sink),
            )
            outcome = _run_until_interrupted(
                runner.start(command.todo_id, on_message=_stream_to(sink) if command.stream else None),
                sink,
            )
            return _run_result(outcome)

    def list_history(self, command: HistoryListCommand) -> list[str]:
        with _runtime(command.workspace) as runtime:
            if command.type_ is not None and command.target_id is not None:
                records = runtime.ledger.get_history(command.type_, command.target_id, command.limit)
            else:
                records = [
                    record
                    for record in runtime.ledger.get_all()
                    if command.type_ is None or record.type is command.type_
                ]
                if command.target_id is not None:
                    records = [record for record in records if record.target_id == command.target_id]
                records.sort(key=lambda record: record.start_time, reverse=True)
                if command.limit is not None:
                    records = records[: command.limit]
            title = "Execution History"
            if command.target_id:
                title = f"Execution History: {command.target_id}"
            return render_history(title, records).split("\n")

    def show_history(self, command: HistoryRecordCommand) -> list[str]:
        with _runtime(command.workspace) as runtime:
            record = runtime.ledger.get(command.record_id)
            if record is None:
                raise LookupError(f"History record {command.record_id} not found")
            return _record_lines(record)

    def remove_history(self, command: HistoryRecordCommand) -> list[str]:
        with _runtime(command.workspace) as runtime:
            record = runtime.ledger.remove_by_id(command.record_id)
            if record is None:
                return [f"History record {command.record_id} is already gone"]
            return [f"Removed history record {record.id} ({record.label})"]

    def cleanup_history(self, command: HistoryMaintenanceCommand) -> list[str]:
        with _runtime(command.workspace) as runtime:
            removed = runtime.ledger.cleanup_invalid_records()
            return [f"Removed {removed} history records with missing log files"]

    def recover_history(self, command: HistoryMaintenanceCommand) -> list[str]:
        with _runtime(command.workspace) as runtime:
            recovered = runtime.ledger.recover_stale_runs()
            return [f"Marked {recovered} interrupted executions as failed"]

    def view_log(self, command: LogsViewCommand, sink: LineSink) -> RunResult:
        with _runtime(command.workspace) as runtime:
            context = _log_context(runtime, command)
            if not command.follow:
                try:
                    payload = build_log_payload(context, runtime.settings.workspace_root)
                except FileNotFoundError as error:
                    raise LookupError(f"{error} ({context.log_file})") from error
                for line in _payload_lines(payload):
                    sink(line)
                return RunResult()
            return _follow_log(runtime, context, sink, command.seconds)


@contextmanager
def _runtime(workspace: Path | None) -> Iterator[_Runtime]:
    settings = Settings.from_env(workspace_root=workspace)
    settings.validate()
    ledger = HistoryLedger(settings.history_file)
    engine = ProcessExecutionEngine(
        executable=settings.tool.executable,
        defaults=CommandOptions.from_settings(settings.tool),
        workspace_root=settings.workspace_root,
    )
    try:
        yield _Runtime(settings=settings, ledger=ledger, engine=engine)
    finally:
        engine.stop_all()
        ledger.flush()


def _run_until_interrupted(
    start: Coroutine[Any, Any, RunOutcome],
    sink: LineSink,
) -> RunOutcome | None:
    try:
        return asyncio.run(start)
    except KeyboardInterrupt:
        sink("Interrupted; execution stopped.")
        return None


def _run_result(outcome: RunOutcome | None) -> RunResult:
    if outcome is None:
        return RunResult(success=False)
    lines: list[str] = []
    if outcome.record is not None:
        record = outcome.record
        lines.append(
            f"Execution {record.id}: status={record.status.value} "
            f"duration={record_duration(record)}",
        )
    return RunResult(lines=lines, success=outcome.succeeded)


def _stream_to(sink: LineSink) -> Callable[[StreamMessage], None]:
    def listener(message: StreamMessage) -> None:
        for line in message_lines(message):
            sink(line)

    return listener


def message_lines(message: StreamMessage) -> list[str]:
    """Terminal rendering of one stream message."""

    lines: list[str] = []
    for position, segment in enumerate(message.segments):
        prefix = f"[{message.badge}] " if position == 0 else "    "
        text_lines = segment.text.splitlines() or [""]
        lines.append(f"{prefix}{text_lines[0]}")
        lines.extend(f"    {line}" for line in text_lines[1:])
    return lines


def entry_lines(entry: LogEntryView) -> list[str]:
    details: list[str] = []
    if entry.relative_to_start_ms is not None:
        details.append(f"+{entry.relative_to_start_ms / 1000:.1f}s")
    if entry.delta_previous_ms is not None:
        details.append(f"prev +{entry.delta_previous_ms / 1000:.1f}s")
    if entry.tokens is not None:
        details.append(f"{entry.tokens} tokens")
    suffix = f" ({', '.join(details)})" if details else ""
    lines = [f"#{entry.index} {entry.badge}{suffix}"]
    for segment in entry.payload:
        lines.extend(f"    {line}" for line in segment.text.splitlines())
    return lines


def _payload_lines(payload: LogViewPayload) -> list[str]:
    header = payload.header
    status = header.run.status or "unknown"
    lines = [f"{header.title} [{status}]", f"Log: {header.relative_path}"]
    for entry in payload.entries:
        lines.extend(entry_lines(entry))
    stats = payload.stats
    lines.append(
        f"Entries: {stats.total_entries} (assistant={stats.assistant_count} "
        f"user={stats.user_count} system={stats.system_count} error={stats.error_count})",
    )
    return lines


def _log_context(runtime: _Runtime, command: LogsViewCommand) -> LogContext:
    if command.record_id is not None:
        record = runtime.ledger.get(command.record_id)
        if record is None:
            raise LookupError(f"History record {command.record_id} not found")
        return LogContext(
            type=record.type,
            target_id=record.target_id,
            title=record.label,
            log_file=Path(record.log_file),
            run=run_context_for(record),
        )
    if command.log_file is None:
        raise ValueError("Either a history record id or --log-file is required.")
    log_file = runtime.settings.resolve(command.log_file)
    return LogContext(
        type=ExecutionType.AGENT,
        target_id=log_file.stem,
        title=log_file.name,
        log_file=log_file,
    )


def _follow_log(
    runtime: _Runtime,
    context: LogContext,
    sink: LineSink,
    seconds: float | None,
) -> RunResult:
    if not context.log_file.exists():
        raise LookupError(f"Log file not found. ({context.log_file})")

    result = RunResult()
    printed = 0

    def on_message(message: ViewerMessage) -> None:
        nonlocal printed
        if isinstance(message, LogDataMessage):
            if printed == 0:
                header = message.payload.header
                sink(f"{header.title} [{header.run.status or 'unknown'}]")
                sink(f"Log: {header.relative_path}")
            for entry in message.payload.entries[printed:]:
                for line in entry_lines(entry):
                    sink(line)
            printed = max(printed, len(message.payload.entries))
        elif isinstance(message, ErrorMessage):
            sink(f"Error: {message.message}")
            result.success = not message.not_found

    async def follow() -> None:
        viewer = LiveLogViewer(
            workspace_root=runtime.settings.workspace_root,
            ledger=runtime.ledger,
            settings=runtime.settings.viewer,
        )
        subscription = viewer.attach(context, on_message)
        try:
            elapsed = 0.0
            step = runtime.settings.viewer.watch_interval_seconds
            while not subscription.closed and (seconds is None or elapsed < seconds):
                await asyncio.sleep(step)
                elapsed += step
        finally:
            viewer.close_all()

    try:
        asyncio.run(follow())
    except KeyboardInterrupt:
        sink("Stopped following.")
    return result


def _todo_lines(item: TodoItem, *, depth: int, show_completed: bool) -> list[str]:
    if item.completed and not show_completed:
        return []
    mark = "x" if item.completed else " "
    priority = f" [{item.priority.upper()}]" if item.priority else ""
    lines = [f"{'  ' * depth}- [{mark}] {item.text}{priority}  ({item.id})"]
    for child in item.children:
        lines.extend(_todo_lines(child, depth=depth + 1, show_completed=show_completed))
    return lines


def _record_lines(record: ExecutionRecord) -> list[str]:
    lines = [
        f"id: {record.id}",
        f"type: {record.type.value}",
        f"target: {record.target_id}",
        f"label: {record.label}",
        f"status: {record.status.value}",
        f"start: {record.start_time.isoformat()}",
        f"end: {record.end_time.isoformat() if record.end_time else '-'}",
        f"duration: {record_duration(record)}",
        f"log: {record.log_file}",
    ]
    if record.source_file:
        lines.append(f"source: {record.source_file}")
    if record.version_hash:
        lines.append(f"version: {record.version_hash}")
    for key, value in sorted((record.metadata or {}).items()):
        lines.append(f"metadata.{key}: {value}")
    return lines
