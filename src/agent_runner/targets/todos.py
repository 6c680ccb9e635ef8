"""Markdown todo checklists and the runner that hands them to the agent.

A todo is a `- [ ] text` line. `[HIGH]`, `[MEDIUM]` or `[LOW]` in the text
sets its priority, deeper indentation nests it under the previous item, and
a fenced `agent-parameters` YAML block right after the line attaches extra
parameters that are passed along in the prompt.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from agent_runner.common import file_timestamp, utc_now
from agent_runner.config import Settings
from agent_runner.execution.engine import MessageListener, ProcessExecutionEngine
from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.models import (
    ExecutionRecord,
    ExecutionStatus,
    ExecutionType,
    TargetState,
    TargetStatus,
)
from agent_runner.execution.tracker import (
    RunOutcome,
    RunSpec,
    StatusListener,
    TargetStatusTracker,
    UserNotifier,
)

logger = logging.getLogger(__name__)

PRIORITIES = ("high", "medium", "low")

_TODO_LINE = re.compile(r"^(\s*)- \[([ xX])\] (.+)$")
_PARAMETERS_FENCE = "```agent-parameters"
_FENCE_END = "```"
_UNSAFE_ID_CHARS = re.compile(r"[/\\:]")


class UnknownTodoError(LookupError):
    """No todo item with the requested id."""


@dataclass(slots=True)
class TodoItem:
    id: str
    text: str
    completed: bool
    file: Path
    line: int
    priority: str | None = None
    parameters: dict[str, Any] | None = None
    children: list[TodoItem] = field(default_factory=list)

    def walk(self) -> list[TodoItem]:
        """This item followed by all nested items, depth first."""

        items = [self]
        for child in self.children:
            items.extend(child.walk())
        return items


def parse_todo_file(
    content: str,
    file_path: Path,
    *,
    log: logging.Logger | None = None,
) -> list[TodoItem]:
    """Root todo items of one markdown file, children attached by indentation."""

    log = log or logger
    lines = content.split("\n")
    roots: list[TodoItem] = []
    stack: list[tuple[TodoItem, int]] = []

    index = 0
    while index < len(lines):
        match = _TODO_LINE.match(lines[index])
        if match is None:
            index += 1
            continue

        indent = len(match.group(1))
        priority, text = _split_priority(match.group(3))
        item = TodoItem(
            id=f"{file_path.name}-{index}",
            text=text,
            completed=match.group(2).lower() == "x",
            file=file_path,
            line=index + 1,
            priority=priority,
        )
        index = _read_parameters(lines, index, item, log)

        while stack and stack[-1][1] >= indent:
            stack.pop()
        if stack:
            stack[-1][0].children.append(item)
        else:
            roots.append(item)
        stack.append((item, indent))
        index += 1
    return roots


def load_todos(todo_dir: Path, *, log: logging.Logger | None = None) -> dict[Path, list[TodoItem]]:
    """Parse every `*.md` file of the todo directory; broken files are logged and skipped."""

    log = log or logger
    if not todo_dir.exists():
        todo_dir.mkdir(parents=True, exist_ok=True)
        return {}

    todos: dict[Path, list[TodoItem]] = {}
    for path in sorted(todo_dir.glob("*.md")):
        try:
            todos[path] = parse_todo_file(path.read_text(encoding="utf-8"), path, log=log)
        except (OSError, UnicodeDecodeError) as error:
            log.error("Failed to load TODO file %s: %s", path.name, error)
    return todos


def build_todo_prompt(todo: TodoItem) -> str:
    prompt = f"Please complete the following task:\n\n{todo.text}"
    if todo.priority:
        prompt += f"\n\nPriority: {todo.priority.upper()}"
    if todo.parameters:
        rendered = json.dumps(todo.parameters, ensure_ascii=False, default=str)
        prompt += (
            f"\n\nParameters: {rendered}\n\n"
            "The parameters might be needed for the agent execution."
        )
    if todo.children:
        prompt += "\n\nSubtasks:"
        for number, child in enumerate(todo.children, start=1):
            mark = "[x]" if child.completed else "[ ]"
            prompt += f"\n{number}. {mark} {child.text}"
    prompt += "\n\nPlease complete this task and update any relevant files as needed."
    return prompt


def compute_version_hash(path: Path) -> str | None:
    """md5 of the source file so a history entry can be tied to the file revision."""

    try:
        return hashlib.md5(path.read_bytes()).hexdigest()  # noqa: S324
    except OSError:
        return None


def mark_completed(todo: TodoItem) -> bool:
    """Tick the checkbox of `todo` in its source file; False if the line moved."""

    lines = todo.file.read_text(encoding="utf-8").split("\n")
    position = todo.line - 1
    if position >= len(lines) or "- [ ]" not in lines[position]:
        return False
    lines[position] = lines[position].replace("- [ ]", "- [x]", 1)
    todo.file.write_text("\n".join(lines), encoding="utf-8")
    todo.completed = True
    return True


class TodoRunner:
    """Runs todo items through a status tracker that stops into `paused`."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        engine: ProcessExecutionEngine,
        ledger: HistoryLedger,
        notifier: UserNotifier | None = None,
        on_change: StatusListener | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self._log = log or logger
        self.tracker = TargetStatusTracker(
            engine=engine,
            ledger=ledger,
            target_type=ExecutionType.TODO,
            stop_state=TargetState.PAUSED,
            notifier=notifier,
            on_change=on_change,
            log=self._log,
        )
        self._todos: dict[Path, list[TodoItem]] = {}
        self.reload()

    def reload(self) -> list[TodoItem]:
        self._todos = load_todos(self.settings.todo_dir, log=self._log)
        return self.todos()

    def todos(self) -> list[TodoItem]:
        """Root items of every file."""

        return [item for items in self._todos.values() for item in items]

    def all_items(self) -> list[TodoItem]:
        return [nested for item in self.todos() for nested in item.walk()]

    def get(self, todo_id: str) -> TodoItem:
        for item in self.all_items():
            if item.id == todo_id:
                return item
        raise UnknownTodoError(f"TODO {todo_id} not found")

    def status(self, todo_id: str) -> TargetStatus:
        return self.tracker.get_status(todo_id)

    def log_file_for(self, todo_id: str, *, now: datetime | None = None) -> Path:
        safe_id = _UNSAFE_ID_CHARS.sub("-", todo_id)
        return self.settings.todo_log_dir / f"{file_timestamp(now or utc_now())}_{safe_id}.jsonl"

    def run_spec(self, todo: TodoItem) -> RunSpec:
        return RunSpec(
            target_id=todo.id,
            label=todo.text,
            prompt=build_todo_prompt(todo),
            log_file=self.log_file_for(todo.id),
            source_file=str(todo.file),
            version_hash=compute_version_hash(todo.file),
            metadata={"priority": todo.priority} if todo.priority else {},
        )

    async def start(self, todo_id: str, *, on_message: MessageListener | None = None) -> RunOutcome:
        """Run one open todo; ticks its checkbox when the run succeeds."""

        todo = self.get(todo_id)
        if todo.completed:
            message = f'TODO "{todo.text}" is already completed'
            self.tracker.notifier.warning(message)
            return RunOutcome(target_id=todo_id, accepted=False, error=message)

        outcome = await self.tracker.start(self.run_spec(todo), on_message=on_message)
        if outcome.record is not None and outcome.record.status is ExecutionStatus.SUCCESS:
            try:
                if not mark_completed(todo):
                    self._log.warning("TODO line %s:%d changed; checkbox not updated", todo.file, todo.line)
            except OSError as error:
                self._log.error("Failed to update TODO file %s: %s", todo.file, error)
        return outcome

    def stop(self, todo_id: str) -> ExecutionRecord | None:
        return self.tracker.stop(todo_id)

    def stop_all(self) -> list[ExecutionRecord]:
        return self.tracker.stop_all()

    def history(self, todo_id: str, limit: int | None = None) -> list[ExecutionRecord]:
        return self.tracker.ledger.get_history(ExecutionType.TODO, todo_id, limit)


def _split_priority(text: str) -> tuple[str | None, str]:
    for priority in PRIORITIES:
        tag = f"[{priority.upper()}]"
        if tag in text:
            return priority, text.replace(tag, "", 1).strip()
    return None, text.strip()


def _read_parameters(lines: list[str], index: int, item: TodoItem, log: logging.Logger) -> int:
    """Attach an `agent-parameters` block following line `index`; returns the last consumed line."""

    cursor = index + 1
    while cursor < len(lines) and not lines[cursor].strip():
        cursor += 1
    if cursor >= len(lines) or lines[cursor].strip() != _PARAMETERS_FENCE:
        return index

    cursor += 1
    body: list[str] = []
    while cursor < len(lines) and lines[cursor].strip() != _FENCE_END:
        body.append(lines[cursor])
        cursor += 1
    if cursor >= len(lines):
        return index

    block = "\n".join(body)
    if block.strip():
        try:
            loaded = yaml.safe_load(block)
        except yaml.YAMLError as error:
            log.warning('Failed to parse agent-parameters for todo "%s": %s', item.text, error)
        else:
            if isinstance(loaded, dict):
                item.parameters = loaded
    return cursor
