"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import os
import shlex
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from agent_runner.execution.command import CommandOptions
from agent_runner.execution.engine import ProcessExecutionEngine
from agent_runner.execution.ledger import HistoryLedger

ECHO_AGENT = f"{shlex.quote(sys.executable)} -m agent_runner.execution.echo_agent"


async def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    """Poll `predicate` on the running loop until it holds."""

    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.02)


@pytest.fixture(autouse=True)
def _clean_agent_runner_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("AGENT_RUNNER_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch) -> Path:
    """Workspace whose agent executable is the local echo agent."""

    monkeypatch.setenv("AGENT_RUNNER_EXECUTABLE", ECHO_AGENT)
    return tmp_path


@pytest.fixture()
def ledger(tmp_path: Path) -> HistoryLedger:
    return HistoryLedger(tmp_path / "history.json")


@pytest.fixture()
def make_engine(tmp_path: Path) -> Callable[..., ProcessExecutionEngine]:
    """Engine factory running the echo agent with extra echo flags."""

    def _make(extra: str = "", **kwargs) -> ProcessExecutionEngine:
        return ProcessExecutionEngine(
            executable=f"{ECHO_AGENT} {extra}".strip(),
            defaults=CommandOptions(verbose=True, print_mode=True),
            workspace_root=tmp_path,
            **kwargs,
        )

    return _make


@pytest.fixture()
def wait_for() -> Callable[..., Awaitable[None]]:
    return _wait_for
