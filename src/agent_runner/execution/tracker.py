"""Per-target state machine in front of the execution engine.

The tracker is the only caller of the engine. It enforces one in-flight run
per target, opens and closes ledger records, and turns engine failures into
an `error` state plus a notification instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from agent_runner.common import utc_now
from agent_runner.execution.command import CommandOptions
from agent_runner.execution.engine import ExecutionError, MessageListener, ProcessExecutionEngine
from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.models import (
    ExecutionCompletion,
    ExecutionRecord,
    ExecutionStart,
    ExecutionStatus,
    ExecutionType,
    TargetState,
    TargetStatus,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[TargetStatus, ExecutionRecord | None], None]


class UserNotifier(Protocol):
    """User-facing notification sink."""

    def info(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LoggingNotifier:
    """Notifier that forwards to a logger; used when no display surface is attached."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def info(self, message: str) -> None:
        self._log.info(message)

    def warning(self, message: str) -> None:
        self._log.warning(message)

    def error(self, message: str) -> None:
        self._log.error(message)


@dataclass(slots=True)
class RunSpec:
    """Everything needed to start one run of a target."""

    target_id: str
    label: str
    prompt: str
    log_file: Path
    options: CommandOptions | None = None
    source_file: str | None = None
    version_hash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunOutcome:
    """Result of `TargetStatusTracker.start`."""

    target_id: str
    accepted: bool
    record: ExecutionRecord | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return (
            self.accepted
            and self.record is not None
            and self.record.status is ExecutionStatus.SUCCESS
        )


class TargetStatusTracker:
    """Idle -> Running -> {Idle, Error}; Running -> Idle/Paused on explicit stop."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        engine: ProcessExecutionEngine,
        ledger: HistoryLedger,
        target_type: ExecutionType,
        stop_state: TargetState = TargetState.IDLE,
        notifier: UserNotifier | None = None,
        on_change: StatusListener | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        if stop_state not in (TargetState.IDLE, TargetState.PAUSED):
            raise ValueError(f"Unsupported stop state: {stop_state.value}")
        self.engine = engine
        self.ledger = ledger
        self.target_type = target_type
        self.stop_state = stop_state
        self._log = log or logger
        self.notifier = notifier or LoggingNotifier(self._log)
        self._on_change = on_change
        self._statuses: dict[str, TargetStatus] = {}

    def task_key(self, target_id: str) -> str:
        return f"{self.target_type.value}-{target_id}"

    def get_status(self, target_id: str) -> TargetStatus:
        """Status of one target, created lazily as idle."""

        status = self._statuses.get(target_id)
        if status is None:
            status = TargetStatus(target_id=target_id)
            self._statuses[target_id] = status
        return status

    def statuses(self) -> list[TargetStatus]:
        return list(self._statuses.values())

    def is_running(self, target_id: str) -> bool:
        return self.get_status(target_id).state is TargetState.RUNNING

    async def start(
        self,
        spec: RunSpec,
        *,
        on_message: MessageListener | None = None,
    ) -> RunOutcome:
        """Run a target to completion; never raises for engine failures."""

        status = self.get_status(spec.target_id)
        if status.state is TargetState.RUNNING:
            message = f"{spec.label} is already running"
            self._log.warning("Rejected start of %s: already running", spec.target_id)
            self.notifier.warning(message)
            return RunOutcome(target_id=spec.target_id, accepted=False, error=message)

        # State changes before the first await so a concurrent start sees Running.
        record = self.ledger.begin_execution(
            ExecutionStart(
                type=self.target_type,
                target_id=spec.target_id,
                label=spec.label,
                log_file=str(spec.log_file),
                source_file=spec.source_file,
                version_hash=spec.version_hash,
                metadata=dict(spec.metadata) or None,
            ),
        )
        status.state = TargetState.RUNNING
        status.start_time = record.start_time
        status.error = None
        status.log_file = str(spec.log_file)
        status.history_id = record.id
        self._changed(status, record)
        self.notifier.info(f"Started {spec.label}")

        try:
            await self.engine.execute(
                self.task_key(spec.target_id),
                spec.prompt,
                spec.options,
                spec.log_file,
                on_message=on_message,
            )
        except ExecutionError as error:
            if not self._owns(status, record):
                return self._superseded(spec.target_id, record)
            return self._fail(spec, status, record, error)
        except asyncio.CancelledError:
            if self._owns(status, record):
                self.stop(spec.target_id)
            raise
        except Exception as error:  # noqa: BLE001
            self._log.exception("Unexpected failure while running %s", spec.target_id)
            if not self._owns(status, record):
                return self._superseded(spec.target_id, record)
            return self._fail(spec, status, record, error)

        if not self._owns(status, record):
            return self._superseded(spec.target_id, record)

        status.state = TargetState.IDLE
        status.last_completed = utc_now()
        closed = self.ledger.complete_execution(
            record.id,
            ExecutionCompletion(status=ExecutionStatus.SUCCESS, end_time=status.last_completed),
        )
        self._changed(status, closed)
        self.notifier.info(f"{spec.label} completed successfully")
        return RunOutcome(target_id=spec.target_id, accepted=True, record=closed)

    def stop(self, target_id: str) -> ExecutionRecord | None:
        """Stop a running target; returns the closed record or None if nothing ran."""

        status = self._statuses.get(target_id)
        if status is None or status.state is not TargetState.RUNNING:
            self.notifier.warning(f"{target_id} is not running")
            return None

        self.engine.stop(self.task_key(target_id))
        status.state = self.stop_state
        record = None
        if status.history_id is not None:
            record = self.ledger.complete_execution(
                status.history_id,
                ExecutionCompletion(status=ExecutionStatus.STOPPED),
            )
        self._changed(status, record)
        self.notifier.info(f"{target_id} stopped")
        return record

    def stop_all(self) -> list[ExecutionRecord]:
        stopped = []
        for status in self.statuses():
            if status.state is TargetState.RUNNING:
                record = self.stop(status.target_id)
                if record is not None:
                    stopped.append(record)
        return stopped

    def _fail(
        self,
        spec: RunSpec,
        status: TargetStatus,
        record: ExecutionRecord,
        error: Exception,
    ) -> RunOutcome:
        text = str(error) or type(error).__name__
        status.state = TargetState.ERROR
        status.error = text
        status.last_completed = utc_now()
        metadata: dict[str, Any] = {"error": text}
        exit_code = getattr(error, "exit_code", None)
        if exit_code is not None:
            metadata["exitCode"] = exit_code
        closed = self.ledger.complete_execution(
            record.id,
            ExecutionCompletion(
                status=ExecutionStatus.FAILED,
                metadata=metadata,
                end_time=status.last_completed,
            ),
        )
        self._changed(status, closed)
        self.notifier.error(f"{spec.label} failed: {text}")
        return RunOutcome(target_id=spec.target_id, accepted=True, record=closed, error=text)

    def _superseded(self, target_id: str, record: ExecutionRecord) -> RunOutcome:
        self._log.debug("Ignoring engine result for %s; run %s was stopped", target_id, record.id)
        return RunOutcome(target_id=target_id, accepted=True, record=self.ledger.get(record.id))

    @staticmethod
    def _owns(status: TargetStatus, record: ExecutionRecord) -> bool:
        return status.state is TargetState.RUNNING and status.history_id == record.id

    def _changed(self, status: TargetStatus, record: ExecutionRecord | None) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(status, record)
        except Exception:  # noqa: BLE001
            self._log.exception("Status listener failed for %s", status.target_id)
