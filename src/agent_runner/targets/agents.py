"""Agent definitions and the runner that executes them.

Agents live as `*.json` or `*.md` files in the agent directory. Markdown
files use a `#` title as the name and `## Description`, `## Prompt`,
`## Parameters` (fenced JSON) and `## Tags` sections. An optional YAML
front matter block may set the same keys.
"""

from __future__ import annotations

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
from agent_runner.execution.command import CommandOptions
from agent_runner.execution.engine import MessageListener, ProcessExecutionEngine
from agent_runner.execution.ledger import HistoryLedger
from agent_runner.execution.models import (
    ExecutionRecord,
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

AGENT_SUFFIXES = (".json", ".md")

_FRONT_MATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*\n", re.DOTALL)
_HEADING = re.compile(r"^(#+)\s+(.+?)\s*#*\s*$")
_JSON_FENCE = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)


class UnknownAgentError(LookupError):
    """No agent definition with the requested name."""


@dataclass(slots=True)
class AgentDefinition:
    name: str
    prompt: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    source_path: Path | None = None

    @property
    def options(self) -> CommandOptions:
        return CommandOptions.from_mapping(self.parameters)


def parse_json_agent(content: str, source_path: Path | None = None) -> AgentDefinition:
    raw = json.loads(content)
    if not isinstance(raw, dict):
        raise ValueError("agent definition must be a JSON object")
    name = raw.get("name")
    prompt = raw.get("prompt")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("agent definition requires a non-empty 'name'")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValueError(f"agent {name!r} requires a non-empty 'prompt'")
    return AgentDefinition(
        name=name.strip(),
        prompt=prompt.strip(),
        description=str(raw.get("description") or ""),
        parameters=_mapping(raw.get("parameters"), "parameters"),
        tags=_tags(raw.get("tags")),
        source_path=source_path,
    )


def parse_markdown_agent(content: str, source_path: Path | None = None) -> AgentDefinition:
    """Parse a markdown agent; the whole body is the prompt when there is no Prompt section."""

    front: dict[str, Any] = {}
    match = _FRONT_MATTER.match(content)
    if match:
        loaded = yaml.safe_load(match.group(1)) or {}
        if not isinstance(loaded, dict):
            raise ValueError("agent front matter must be a mapping")
        front = loaded
        content = content[match.end() :]

    title, sections = _split_sections(content)
    fallback_name = source_path.stem if source_path is not None else ""
    name = str(front.get("name") or title or fallback_name).strip()
    if not name:
        raise ValueError("agent definition requires a name")

    prompt = sections.get("prompt") or content.strip()
    parameters = _mapping(front.get("parameters"), "parameters")
    if "parameters" in sections:
        fence = _JSON_FENCE.search(sections["parameters"])
        if fence is not None:
            parameters = {**parameters, **_mapping(json.loads(fence.group(1)), "parameters")}

    tags = _tags(front.get("tags"))
    if "tags" in sections:
        first_line = sections["tags"].splitlines()[0] if sections["tags"] else ""
        tags = tags + [tag for tag in _tags(first_line) if tag not in tags]

    return AgentDefinition(
        name=name,
        prompt=prompt,
        description=str(front.get("description") or sections.get("description") or "").strip(),
        parameters=parameters,
        tags=tags,
        source_path=source_path,
    )


def load_agents(agent_dir: Path, *, log: logging.Logger | None = None) -> dict[str, AgentDefinition]:
    """Read every agent file; broken files are logged and skipped."""

    log = log or logger
    if not agent_dir.exists():
        agent_dir.mkdir(parents=True, exist_ok=True)
        return {}

    agents: dict[str, AgentDefinition] = {}
    for path in sorted(agent_dir.iterdir()):
        if not path.is_file() or path.suffix not in AGENT_SUFFIXES:
            continue
        try:
            content = path.read_text(encoding="utf-8")
            if path.suffix == ".json":
                agent = parse_json_agent(content, path)
            else:
                agent = parse_markdown_agent(content, path)
            CommandOptions.from_mapping(agent.parameters)
        except (OSError, ValueError, yaml.YAMLError) as error:
            log.error("Failed to load agent %s: %s", path.name, error)
            continue
        if agent.name in agents:
            log.warning("Duplicate agent name %s in %s; keeping the first", agent.name, path.name)
            continue
        agents[agent.name] = agent
    return agents


class AgentRunner:
    """Loads agent definitions and runs them through a status tracker."""

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
            target_type=ExecutionType.AGENT,
            stop_state=TargetState.IDLE,
            notifier=notifier,
            on_change=on_change,
            log=self._log,
        )
        self._agents: dict[str, AgentDefinition] = {}
        self.reload()

    def reload(self) -> list[AgentDefinition]:
        self._agents = load_agents(self.settings.agent_dir, log=self._log)
        for name in self._agents:
            self.tracker.get_status(name)
        return self.agents()

    def agents(self) -> list[AgentDefinition]:
        return list(self._agents.values())

    def get(self, name: str) -> AgentDefinition:
        agent = self._agents.get(name)
        if agent is None:
            raise UnknownAgentError(f"Agent {name} not found")
        return agent

    def status(self, name: str) -> TargetStatus:
        return self.tracker.get_status(name)

    def log_file_for(self, name: str, *, now: datetime | None = None) -> Path:
        return self.settings.agent_log_dir / name / f"{file_timestamp(now or utc_now())}.jsonl"

    def run_spec(self, name: str) -> RunSpec:
        agent = self.get(name)
        metadata: dict[str, Any] = {}
        if agent.tags:
            metadata["tags"] = list(agent.tags)
        return RunSpec(
            target_id=agent.name,
            label=f"Agent {agent.name}",
            prompt=agent.prompt,
            log_file=self.log_file_for(agent.name),
            options=agent.options,
            source_file=str(agent.source_path) if agent.source_path else None,
            metadata=metadata,
        )

    async def start(self, name: str, *, on_message: MessageListener | None = None) -> RunOutcome:
        return await self.tracker.start(self.run_spec(name), on_message=on_message)

    def stop(self, name: str) -> ExecutionRecord | None:
        return self.tracker.stop(name)

    def stop_all(self) -> list[ExecutionRecord]:
        return self.tracker.stop_all()

    def history(self, name: str, limit: int | None = None) -> list[ExecutionRecord]:
        return self.tracker.ledger.get_history(ExecutionType.AGENT, name, limit)


def _split_sections(content: str) -> tuple[str | None, dict[str, str]]:
    """First `#` title and lowercase section bodies.

    A section runs until the next heading of the same or a higher level, so
    prompts may contain their own sub-headings.
    """

    title: str | None = None
    sections: dict[str, str] = {}
    lines = content.splitlines()
    open_name: str | None = None
    open_level = 0
    buffer: list[str] = []

    def close() -> None:
        if open_name is not None and open_name not in sections:
            sections[open_name] = "\n".join(buffer).strip()

    for line in lines:
        match = _HEADING.match(line)
        if match is None:
            if open_name is not None:
                buffer.append(line)
            continue
        level = len(match.group(1))
        heading = match.group(2).strip()
        if open_name is not None and level > open_level:
            buffer.append(line)
            continue
        close()
        if level == 1 and title is None:
            title = heading
            open_name = None
            buffer = []
            continue
        open_name = heading.lower()
        open_level = level
        buffer = []
    close()
    return title, sections


def _mapping(value: Any, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"agent {label} must be an object")
    return dict(value)


def _tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(item) for item in value]
    else:
        raise ValueError("agent tags must be a list or a comma separated string")
    return [item.strip() for item in items if item.strip()]
