"""Rendering-ready projection of an execution log file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar

from agent_runner.common import to_iso
from agent_runner.execution.models import (
    ExecutionRecord,
    ExecutionType,
    MessageKind,
    PayloadSegment,
    StreamMessage,
)
from agent_runner.execution.parser import parse_line

LOG_FILE_NOT_FOUND = "Log file not found."


@dataclass(slots=True)
class RunContext:
    """Run details shown in the log header; all fields optional."""

    status: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    version_hash: str | None = None
    source_file: str | None = None
    error: str | None = None

    def merged(self, updates: RunContext | None) -> RunContext:
        """New context where every set field of `updates` wins."""

        if updates is None:
            return replace(self)
        changes = {
            item.name: getattr(updates, item.name)
            for item in fields(self)
            if getattr(updates, item.name) is not None
        }
        return replace(self, **changes)

    def to_dict(self) -> dict[str, str]:
        payload = {
            "status": self.status,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "versionHash": self.version_hash,
            "sourceFile": self.source_file,
            "error": self.error,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class LogContext:
    """Which target's log a viewer subscription shows."""

    type: ExecutionType
    target_id: str
    title: str
    log_file: Path
    run: RunContext = field(default_factory=RunContext)

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.target_id}"


@dataclass(slots=True)
class LogEntryView:
    index: int
    badge: str
    status: str
    payload: list[PayloadSegment]
    timestamp: datetime | None = None
    relative_to_start_ms: int | None = None
    delta_previous_ms: int | None = None
    tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "index": self.index,
            "badge": self.badge,
            "status": self.status,
        }
        if self.timestamp is not None:
            payload["timestamp"] = to_iso(self.timestamp)
        if self.relative_to_start_ms is not None:
            payload["relativeToStartMs"] = self.relative_to_start_ms
        if self.delta_previous_ms is not None:
            payload["deltaPreviousMs"] = self.delta_previous_ms
        if self.tokens is not None:
            payload["tokens"] = self.tokens
        payload["payload"] = [
            {"text": segment.text, "isCode": segment.is_code} for segment in self.payload
        ]
        return payload


@dataclass(slots=True)
class LogStats:
    total_entries: int = 0
    assistant_count: int = 0
    user_count: int = 0
    system_count: int = 0
    error_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "totalEntries": self.total_entries,
            "assistantCount": self.assistant_count,
            "userCount": self.user_count,
            "systemCount": self.system_count,
            "errorCount": self.error_count,
        }


@dataclass(slots=True)
class LogHeader:
    title: str
    type: ExecutionType
    log_file: str
    relative_path: str
    run: RunContext

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "type": self.type.value,
            "logFile": self.log_file,
            "relativePath": self.relative_path,
            "run": self.run.to_dict(),
        }


@dataclass(slots=True)
class LogViewPayload:
    """Full re-rendered view of one log file."""

    header: LogHeader
    entries: list[LogEntryView]
    stats: LogStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": self.header.to_dict(),
            "entries": [entry.to_dict() for entry in self.entries],
            "stats": self.stats.to_dict(),
        }


@dataclass(slots=True)
class LogDataMessage:
    type: ClassVar[str] = "logData"
    payload: LogViewPayload


@dataclass(slots=True)
class LoadingMessage:
    type: ClassVar[str] = "setLoading"
    loading: bool


@dataclass(slots=True)
class ErrorMessage:
    type: ClassVar[str] = "showError"
    message: str
    not_found: bool = False


ViewerMessage = LogDataMessage | LoadingMessage | ErrorMessage


def read_log_messages(log_file: Path) -> list[StreamMessage]:
    """Parse every non-blank line of a JSON-Lines log, in file order."""

    text = log_file.read_text(encoding="utf-8", errors="replace")
    return [parse_line(line) for line in text.splitlines() if line.strip()]


def build_entries(messages: list[StreamMessage]) -> list[LogEntryView]:
    """Attach timing deltas relative to the first and the previous timestamped entry."""

    baseline: datetime | None = None
    previous: datetime | None = None
    entries: list[LogEntryView] = []
    for index, message in enumerate(messages):
        timestamp = message.timestamp
        relative = None
        delta = None
        if timestamp is not None:
            if baseline is None:
                baseline = timestamp
            relative = _millis(timestamp - baseline)
            if previous is not None:
                delta = _millis(timestamp - previous)
            previous = timestamp
        entries.append(
            LogEntryView(
                index=index,
                badge=message.badge,
                status=message.kind.value,
                payload=list(message.segments),
                timestamp=timestamp,
                relative_to_start_ms=relative,
                delta_previous_ms=delta,
                tokens=message.tokens,
            ),
        )
    return entries


def calculate_stats(entries: list[LogEntryView]) -> LogStats:
    stats = LogStats(total_entries=len(entries))
    for entry in entries:
        if entry.status == MessageKind.ASSISTANT.value:
            stats.assistant_count += 1
        elif entry.status == MessageKind.USER.value:
            stats.user_count += 1
        elif entry.status == MessageKind.SYSTEM.value:
            stats.system_count += 1
        elif entry.status == MessageKind.ERROR.value:
            stats.error_count += 1
    return stats


def relative_path(path: Path, workspace_root: Path | None) -> str:
    """Path relative to the workspace, or the path itself when it lies outside."""

    if workspace_root is None:
        return str(path)
    try:
        relative = os.path.relpath(path, workspace_root)
    except ValueError:
        return str(path)
    return str(path) if relative.startswith("..") else relative


def build_log_payload(context: LogContext, workspace_root: Path | None = None) -> LogViewPayload:
    """Re-read and re-parse the whole log file; raises FileNotFoundError if it is gone."""

    if not context.log_file.exists():
        raise FileNotFoundError(LOG_FILE_NOT_FOUND)

    entries = build_entries(read_log_messages(context.log_file))
    return LogViewPayload(
        header=LogHeader(
            title=context.title,
            type=context.type,
            log_file=str(context.log_file),
            relative_path=relative_path(context.log_file, workspace_root),
            run=context.run,
        ),
        entries=entries,
        stats=calculate_stats(entries),
    )


def _millis(value: timedelta) -> int:
    return int(round(value.total_seconds() * 1000))


def run_context_for(record: ExecutionRecord | None, *, error: str | None = None) -> RunContext:
    """Header run details derived from a ledger record."""

    if record is None:
        return RunContext(error=error)
    metadata_error = (record.metadata or {}).get("error")
    return RunContext(
        status=record.status.value,
        start_time=to_iso(record.start_time),
        end_time=to_iso(record.end_time) if record.end_time else None,
        version_hash=record.version_hash,
        source_file=record.source_file,
        error=error or (metadata_error if isinstance(metadata_error, str) else None),
    )
