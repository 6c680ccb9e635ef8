"""Execution orchestration and live log pipeline."""

from agent_runner.execution.command import CommandOptions, build_command
from agent_runner.execution.engine import ExecutionError, ProcessExecutionEngine, SpawnError
from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.log_store import ExecutionLogStore, ExecutionLogWriter
from agent_runner.execution.models import (
    ExecutionCompletion,
    ExecutionRecord,
    ExecutionStart,
    ExecutionStatus,
    ExecutionType,
    MessageKind,
    StreamMessage,
    TargetState,
    TargetStatus,
)
from agent_runner.execution.parser import parse_line
from agent_runner.execution.tracker import RunOutcome, RunSpec, TargetStatusTracker
from agent_runner.execution.viewer import LiveLogViewer, LogSubscription

__all__ = [
    "CommandOptions",
    "ExecutionCompletion",
    "ExecutionError",
    "ExecutionLogStore",
    "ExecutionLogWriter",
    "ExecutionRecord",
    "ExecutionStart",
    "ExecutionStatus",
    "ExecutionType",
    "HistoryLedger",
    "LiveLogViewer",
    "LogSubscription",
    "MessageKind",
    "ProcessExecutionEngine",
    "RunOutcome",
    "RunSpec",
    "SpawnError",
    "StreamMessage",
    "TargetState",
    "TargetStatus",
    "TargetStatusTracker",
    "build_command",
    "parse_line",
]
