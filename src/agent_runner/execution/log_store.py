"""Append-only JSON-Lines persistence of stream messages."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import IO

from agent_runner.execution.models import StreamMessage

logger = logging.getLogger(__name__)


class ExecutionLogWriter:
    """Open append handle on one execution log; every line is flushed immediately."""

    def __init__(self, log_file: Path, handle: IO[str]) -> None:
        self.log_file = log_file
        self._handle = handle
        self.lines_written = 0

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def append(self, message: StreamMessage) -> None:
        self._handle.write(_serialize(message))
        self._handle.flush()
        self.lines_written += 1

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()

    def __enter__(self) -> ExecutionLogWriter:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


class ExecutionLogStore:
    """Owns appending bytes to per-execution log files."""

    def __init__(self, *, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def open(self, log_file: Path) -> ExecutionLogWriter:
        """Create parent directories and open the file in append mode (never truncates)."""

        log_file.parent.mkdir(parents=True, exist_ok=True)
        handle = log_file.open("a", encoding="utf-8")
        self._log.debug("Opened execution log %s", log_file)
        return ExecutionLogWriter(log_file, handle)

    def append(self, log_file: Path, message: StreamMessage) -> None:
        """Append one message as a standalone write."""

        with self.open(log_file) as writer:
            writer.append(message)


def _serialize(message: StreamMessage) -> str:
    return json.dumps(message.to_record(), ensure_ascii=False, default=str) + "\n"
