"""Subprocess lifecycle for agent CLI executions.

One process per task key. The prompt is written to stdin, stdout is parsed
line by line and every message is appended to the execution log before
anything else sees it. Stderr lines land in the same log as error messages.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from agent_runner.common import utc_now
from agent_runner.execution.command import CommandOptions, build_command
from agent_runner.execution.log_store import ExecutionLogStore, ExecutionLogWriter
from agent_runner.execution.models import MessageKind, StreamMessage
from agent_runner.execution.parser import error_message, parse_line

logger = logging.getLogger(__name__)

MessageListener = Callable[[StreamMessage], None]

_RECENT_FRAGMENTS = 10
_FAILURE_SAMPLE = 3
_STREAM_LIMIT_BYTES = 8 * 1024 * 1024

# Nested sessions of the agent CLI refuse to start when this is inherited.
_STRIPPED_ENV_KEYS = frozenset({"CLAUDECODE"})


class ExecutionError(RuntimeError):
    """Agent execution failed; the message is meant for the user."""

    def __init__(
        self,
        message: str,
        *,
        task_key: str,
        log_file: Path,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.task_key = task_key
        self.log_file = log_file
        self.exit_code = exit_code


class SpawnError(ExecutionError):
    """The executable could not be started or fed its input."""


@dataclass(slots=True)
class _RunDiagnostics:
    """Bounded memory of recent output used to explain a failure."""

    recent: deque[str] = field(default_factory=lambda: deque(maxlen=_RECENT_FRAGMENTS))
    stderr: deque[str] = field(default_factory=lambda: deque(maxlen=_RECENT_FRAGMENTS))
    last_error: str | None = None
    log_error: str | None = None

    def record(self, text: str | None) -> None:
        if text and text.strip():
            self.recent.append(text.strip())

    def observe(self, message: StreamMessage) -> None:
        if message.kind is MessageKind.ERROR and message.error:
            self.last_error = message.error
        for fragment in message.text_fragments():
            self.record(fragment)

    def failure_details(self, *, header: str, log_file: Path) -> str:
        details = [header]
        if self.last_error and self.last_error.strip():
            details.append(f"Agent reported: {self.last_error.strip()}")
        stderr_text = "\n".join(self.stderr).strip()
        if stderr_text:
            details.append(f"stderr: {stderr_text}")
        if not self.last_error and not stderr_text and self.recent:
            sample = list(self.recent)[-_FAILURE_SAMPLE:]
            details.append(f"Recent output: {' | '.join(sample)}")
        details.append(f"Log file: {log_file}")
        return "\n".join(details)


@dataclass(slots=True)
class _ActiveRun:
    """Registered before the spawn so a stop can land while the process starts."""

    process: asyncio.subprocess.Process | None = None
    stop_requested: bool = False


class ProcessExecutionEngine:
    """Spawns the agent CLI per task key and streams its output into the log store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        executable: str,
        defaults: CommandOptions | None = None,
        workspace_root: Path | None = None,
        env: Mapping[str, str] | None = None,
        log_store: ExecutionLogStore | None = None,
        clock: Callable[[], datetime] = utc_now,
        line_limit: int = _STREAM_LIMIT_BYTES,
        log: logging.Logger | None = None,
    ) -> None:
        self.executable = executable
        self.line_limit = line_limit
        self.defaults = defaults or CommandOptions()
        self.workspace_root = workspace_root
        self._env_overrides = dict(env or {})
        self._log = log or logger
        self._log_store = log_store or ExecutionLogStore(log=self._log)
        self._clock = clock
        self._runs: dict[str, _ActiveRun] = {}

    def is_running(self, task_key: str) -> bool:
        return task_key in self._runs

    def running_keys(self) -> list[str]:
        return list(self._runs)

    def build_argv(self, options: CommandOptions | None = None) -> list[str]:
        return build_command(
            self.executable,
            self.defaults,
            options,
            workspace_root=str(self.workspace_root) if self.workspace_root else None,
        )

    async def execute(
        self,
        task_key: str,
        input_text: str,
        options: CommandOptions | None,
        log_file: Path,
        *,
        on_message: MessageListener | None = None,
    ) -> None:
        """Run one process to completion; raises `ExecutionError` on failure."""

        if task_key in self._runs:
            message = f"Agent execution already running for: {task_key}"
            self._log.warning(message)
            raise ExecutionError(message, task_key=task_key, log_file=log_file)

        argv = self.build_argv(options)
        try:
            writer = self._log_store.open(log_file)
        except OSError as error:
            message = f"Cannot open execution log {log_file}: {error}"
            self._log.error(message)
            raise SpawnError(message, task_key=task_key, log_file=log_file) from error

        run = _ActiveRun()
        self._runs[task_key] = run
        self._log.info("Starting agent execution for: %s", task_key)
        self._log.info("Command: %s", " ".join(argv))
        self._log.info("Log file: %s", log_file)
        try:
            await self._run(task_key, run, argv, input_text, writer, on_message)
        finally:
            if self._runs.get(task_key) is run:
                del self._runs[task_key]
            writer.close()

    async def _run(  # noqa: PLR0913
        self,
        task_key: str,
        run: _ActiveRun,
        argv: list[str],
        input_text: str,
        writer: ExecutionLogWriter,
        on_message: MessageListener | None,
    ) -> None:
        log_file = writer.log_file
        diagnostics = _RunDiagnostics()
        try:
            process = await self._spawn(argv)
        except FileNotFoundError as error:
            message = f"Agent executable not found: {argv[0]}"
            self._write_engine_error(writer, diagnostics, message)
            raise SpawnError(message, task_key=task_key, log_file=log_file) from error
        except OSError as error:
            message = f"Agent executable failed to start: {error}"
            self._write_engine_error(writer, diagnostics, message)
            raise SpawnError(message, task_key=task_key, log_file=log_file) from error

        run.process = process
        if run.stop_requested:
            _terminate(process)
            exit_code = await process.wait()
            message = f"Agent execution stopped before it started for: {task_key}"
            self._log.info(message)
            raise ExecutionError(message, task_key=task_key, log_file=log_file, exit_code=exit_code)

        try:
            feed_error, _, _ = await asyncio.gather(
                self._feed_input(process, input_text),
                self._consume_stdout(task_key, process, writer, diagnostics, on_message),
                self._consume_stderr(task_key, process, writer, diagnostics, on_message),
            )
            if feed_error is not None and diagnostics.log_error is None:
                self._write_engine_error(writer, diagnostics, feed_error, process)
                _terminate(process)
            exit_code = await process.wait()
        except BaseException:
            _terminate(process)
            raise

        if diagnostics.log_error is not None:
            raise ExecutionError(
                diagnostics.log_error,
                task_key=task_key,
                log_file=log_file,
                exit_code=exit_code,
            )

        if feed_error is not None:
            self._log.error("%s (%s)", feed_error, task_key)
            raise SpawnError(feed_error, task_key=task_key, log_file=log_file, exit_code=exit_code)

        if exit_code == 0:
            self._log.info("Agent execution completed successfully for: %s", task_key)
            return

        details = diagnostics.failure_details(
            header=f"Agent execution failed with code {exit_code} for: {task_key}",
            log_file=log_file,
        )
        self._log.error(details)
        raise ExecutionError(details, task_key=task_key, log_file=log_file, exit_code=exit_code)

    def stop(self, task_key: str) -> bool:
        """Send SIGTERM and forget the run; does not wait for the process to exit.

        A run that is still spawning is terminated as soon as its process exists.
        """

        run = self._runs.pop(task_key, None)
        if run is None:
            return False
        run.stop_requested = True
        if run.process is not None:
            _terminate(run.process)
        self._log.info("Stopped agent execution for: %s", task_key)
        return True

    def stop_all(self) -> list[str]:
        stopped = list(self._runs)
        for task_key in stopped:
            self.stop(task_key)
        return stopped

    async def _spawn(self, argv: list[str]) -> asyncio.subprocess.Process:
        env = {key: value for key, value in os.environ.items() if key not in _STRIPPED_ENV_KEYS}
        env.update(self._env_overrides)
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.workspace_root) if self.workspace_root else None,
            env=env,
            limit=self.line_limit,
        )

    async def _feed_input(self, process: asyncio.subprocess.Process, input_text: str) -> str | None:
        stdin = process.stdin
        if stdin is None:
            return "Agent process stdin is not available."
        try:
            stdin.write(input_text.encode("utf-8"))
            await stdin.drain()
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as error:
            return f"Failed to write prompt to agent stdin: {error}"
        return None

    async def _consume_stdout(  # noqa: PLR0913
        self,
        task_key: str,
        process: asyncio.subprocess.Process,
        writer: ExecutionLogWriter,
        diagnostics: _RunDiagnostics,
        on_message: MessageListener | None,
    ) -> None:
        if process.stdout is None:
            return
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError:
                text = f"Dropped an output line longer than {self.line_limit} bytes"
                if not self._write_engine_error(writer, diagnostics, text, process):
                    return
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            message = parse_line(line).stamped(self._clock())
            if not self._persist(writer, diagnostics, message, process):
                return
            diagnostics.observe(message)
            self._deliver(task_key, message, on_message)

    async def _consume_stderr(  # noqa: PLR0913
        self,
        task_key: str,
        process: asyncio.subprocess.Process,
        writer: ExecutionLogWriter,
        diagnostics: _RunDiagnostics,
        on_message: MessageListener | None,
    ) -> None:
        if process.stderr is None:
            return
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                text = f"Dropped a stderr line longer than {self.line_limit} bytes"
                diagnostics.stderr.append(f"[{text}]")
                if not self._write_engine_error(writer, diagnostics, text, process):
                    return
                continue
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not text.strip():
                continue
            message = error_message(text).stamped(self._clock())
            if not self._persist(writer, diagnostics, message, process):
                return
            diagnostics.stderr.append(text)
            diagnostics.record(text)
            self._deliver(task_key, message, on_message)

    def _persist(
        self,
        writer: ExecutionLogWriter,
        diagnostics: _RunDiagnostics,
        message: StreamMessage,
        process: asyncio.subprocess.Process | None = None,
    ) -> bool:
        """Append to the log; on an I/O failure remember it and terminate the process."""

        try:
            writer.append(message)
        except OSError as error:
            if diagnostics.log_error is None:
                diagnostics.log_error = f"Failed to write execution log {writer.log_file}: {error}"
                self._log.error(diagnostics.log_error)
            if process is not None:
                _terminate(process)
            return False
        return True

    def _write_engine_error(
        self,
        writer: ExecutionLogWriter,
        diagnostics: _RunDiagnostics,
        text: str,
        process: asyncio.subprocess.Process | None = None,
    ) -> bool:
        self._log.error(text)
        diagnostics.record(text)
        message = error_message(text).stamped(self._clock())
        return self._persist(writer, diagnostics, message, process)

    def _deliver(
        self,
        task_key: str,
        message: StreamMessage,
        on_message: MessageListener | None,
    ) -> None:
        self._display(message)
        if on_message is None:
            return
        try:
            on_message(message)
        except Exception:  # noqa: BLE001
            self._log.exception("Message listener failed for %s", task_key)

    def _display(self, message: StreamMessage) -> None:
        if not self._log.isEnabledFor(logging.DEBUG):
            return
        if message.kind is MessageKind.ASSISTANT:
            for block in message.blocks:
                if block.type == "text" and block.text:
                    self._log.debug("Assistant: %s", block.text)
                elif block.type == "tool_use":
                    self._log.debug("Tool Use: %s - %s", block.name, block.input)
        elif message.kind is MessageKind.RESULT:
            self._log.debug("Result: %s", message.result)
        elif message.kind is MessageKind.ERROR:
            self._log.debug("Error: %s", message.error)
        elif message.kind is MessageKind.SYSTEM:
            for fragment in message.text_fragments():
                self._log.debug("System: %s", fragment)


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
