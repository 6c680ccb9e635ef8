from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest

from agent_runner.config import Settings
from agent_runner.execution.command import CommandOptions
from agent_runner.execution.engine import ProcessExecutionEngine
from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.models import ExecutionStatus, TargetState
from agent_runner.targets.todos import (
    TodoRunner,
    UnknownTodoError,
    build_todo_prompt,
    compute_version_hash,
    load_todos,
    parse_todo_file,
)

pytestmark = [
    allure.epic("Targets"),
    allure.feature("Todos"),
]

SPRINT_MD = """# Sprint

- [ ] Write docs [HIGH]
  - [x] Outline
  - [ ] Examples
- [x] Ship release
- [ ] Fix bug
  ```agent-parameters
  model: opus
  retries: 2
  ```
"""


def test_parse_nests_items_and_reads_priority_and_parameters() -> None:
    roots = parse_todo_file(SPRINT_MD, Path("sprint.md"))

    assert [item.id for item in roots] == ["sprint.md-2", "sprint.md-5", "sprint.md-6"]
    docs, release, bug = roots
    assert (docs.text, docs.priority, docs.completed) == ("Write docs", "high", False)
    assert [child.text for child in docs.children] == ["Outline", "Examples"]
    assert docs.children[0].completed is True
    assert release.completed is True
    assert bug.parameters == {"model": "opus", "retries": 2}
    assert bug.line == 7
    assert [item.id for item in docs.walk()] == ["sprint.md-2", "sprint.md-3", "sprint.md-4"]


def test_invalid_parameter_block_is_ignored() -> None:
    content = "- [ ] Broken\n```agent-parameters\nkey: [unclosed\n```\n- [ ] Next\n"

    roots = parse_todo_file(content, Path("t.md"))

    assert [item.text for item in roots] == ["Broken", "Next"]
    assert roots[0].parameters is None


def test_prompt_lists_priority_parameters_and_subtasks() -> None:
    docs, _, bug = parse_todo_file(SPRINT_MD, Path("sprint.md"))

    assert build_todo_prompt(docs) == (
        "Please complete the following task:\n\n"
        "Write docs\n\n"
        "Priority: HIGH\n\n"
        "Subtasks:\n"
        "1. [x] Outline\n"
        "2. [ ] Examples\n\n"
        "Please complete this task and update any relevant files as needed."
    )
    assert 'Parameters: {"model": "opus", "retries": 2}' in build_todo_prompt(bug)


def test_load_todos_reads_markdown_files_only(tmp_path: Path) -> None:
    (tmp_path / "sprint.md").write_text(SPRINT_MD, "utf-8")
    (tmp_path / "notes.txt").write_text("- [ ] not a todo file", "utf-8")

    todos = load_todos(tmp_path)

    assert list(todos) == [tmp_path / "sprint.md"]
    assert compute_version_hash(tmp_path / "sprint.md") is not None
    assert compute_version_hash(tmp_path / "missing.md") is None


def _runner(workspace: Path) -> TodoRunner:
    settings = Settings.from_env(workspace)
    settings.todo_dir.mkdir(parents=True)
    (settings.todo_dir / "sprint.md").write_text(SPRINT_MD, "utf-8")
    engine = ProcessExecutionEngine(
        executable=settings.tool.executable,
        defaults=CommandOptions.from_settings(settings.tool),
        workspace_root=workspace,
    )
    return TodoRunner(settings=settings, engine=engine, ledger=HistoryLedger(settings.history_file))


def test_successful_run_ticks_the_checkbox(workspace: Path) -> None:
    runner = _runner(workspace)
    source = runner.settings.todo_dir / "sprint.md"

    outcome = asyncio.run(runner.start("sprint.md-6"))

    assert outcome.succeeded
    assert outcome.record.source_file == str(source)
    assert outcome.record.version_hash is not None
    assert source.read_text("utf-8").splitlines()[6] == "- [x] Fix bug"
    assert runner.status("sprint.md-6").state is TargetState.IDLE
    assert [item.status for item in runner.history("sprint.md-6")] == [ExecutionStatus.SUCCESS]


def test_completed_todo_is_refused(workspace: Path) -> None:
    runner = _runner(workspace)

    outcome = asyncio.run(runner.start("sprint.md-5"))

    assert outcome.accepted is False
    assert "already completed" in outcome.error
    assert runner.history("sprint.md-5") == []


def test_nested_items_are_addressable(workspace: Path) -> None:
    runner = _runner(workspace)

    assert runner.get("sprint.md-4").text == "Examples"
    assert len(runner.all_items()) == 5
    with pytest.raises(UnknownTodoError):
        runner.get("sprint.md-99")


def test_log_file_name_is_filesystem_safe(workspace: Path) -> None:
    runner = _runner(workspace)

    path = runner.log_file_for("dir/a:b\\c")

    assert path.parent == runner.settings.todo_log_dir
    assert path.name.endswith("_dir-a-b-c.jsonl")
