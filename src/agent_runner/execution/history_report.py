"""Markdown rendering of execution history."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from agent_runner.common import utc_now
from agent_runner.execution.models import ExecutionRecord, ExecutionStatus

_STATUS_MARKERS = {
    ExecutionStatus.SUCCESS: "[ok]",
    ExecutionStatus.FAILED: "[x]",
    ExecutionStatus.STOPPED: "[-]",
    ExecutionStatus.PAUSED: "[=]",
    ExecutionStatus.RUNNING: "[..]",
}


def format_duration(seconds: float) -> str:
    """Compact duration: `42s`, `3m 5s`, `2h 10m`."""

    total = max(int(seconds), 0)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def record_duration(record: ExecutionRecord, *, now: datetime | None = None) -> str:
    """Elapsed time of a record; running records are measured to `now`."""

    if record.end_time is None:
        if record.status is ExecutionStatus.RUNNING:
            return format_duration(((now or utc_now()) - record.start_time).total_seconds())
        return "-"
    return format_duration((record.end_time - record.start_time).total_seconds())


def render_history(
    title: str,
    records: Iterable[ExecutionRecord],
    *,
    now: datetime | None = None,
) -> str:
    """Markdown table of records, newest first, followed by a legend."""

    entries = sorted(records, key=lambda record: record.start_time, reverse=True)
    lines = [f"# {title}", "", f"*Total Executions: {len(entries)}*", ""]
    if not entries:
        lines.append("No execution history available.")
        return "\n".join(lines)

    lines.append("| Time | Type | Name | Status | Duration | Source | Log | Version |")
    lines.append("|------|------|------|--------|----------|--------|-----|---------|")
    for record in entries:
        started = record.start_time.astimezone().strftime("%m/%d %H:%M:%S")
        marker = _STATUS_MARKERS.get(record.status, "[?]")
        source = Path(record.source_file).name if record.source_file else "-"
        log_name = Path(record.log_file).name if record.log_file else "-"
        version = record.version_hash[:8] if record.version_hash else "-"
        lines.append(
            f"| {started} | {record.type.value} | {_cell(record.label)} | "
            f"{marker} {record.status.value} | {record_duration(record, now=now)} | "
            f"{_cell(source)} | {_cell(log_name)} | {version} |",
        )

    lines.extend(["", "---", "", "## Legend"])
    lines.extend(
        f"- `{marker}` {status.value.capitalize()}" for status, marker in _STATUS_MARKERS.items()
    )
    return "\n".join(lines)


def _cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")
