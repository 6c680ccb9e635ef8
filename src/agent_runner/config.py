"""Runtime configuration for agent execution, history and log viewing."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

PERMISSION_MODES = ("auto", "always-ask", "always-allow")
OUTPUT_FORMATS = ("stream-json", "text")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class PathSettings:
    """Workspace-relative locations of definitions, logs and history."""

    agent_dir: Path = Path(".agent_runner/agents")
    agent_log_dir: Path = Path(".agent_runner/agent-logs")
    todo_dir: Path = Path(".agent_runner/todos")
    todo_log_dir: Path = Path(".agent_runner/todo-logs")
    history_file: Path = Path(".agent_runner/history.json")


@dataclass(slots=True)
class ToolSettings:
    """Default invocation parameters for the external agent CLI."""

    executable: str = "claude"
    permission_mode: str = "auto"
    output_format: str = "stream-json"
    verbose: bool = True
    print_mode: bool = True
    add_dirs: tuple[str, ...] = ()
    model: str | None = None
    mcp_config: str | None = None


@dataclass(slots=True)
class ViewerSettings:
    """Live log viewer timing."""

    debounce_seconds: float = 0.12
    poll_interval_seconds: float = 2.0
    watch_interval_seconds: float = 0.1


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    workspace_root: Path = field(default_factory=Path.cwd)
    log_level: str = "WARNING"
    paths: PathSettings = field(default_factory=PathSettings)
    tool: ToolSettings = field(default_factory=ToolSettings)
    viewer: ViewerSettings = field(default_factory=ViewerSettings)

    @classmethod
    def from_env(cls, workspace_root: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        root = workspace_root or Path(os.getenv("AGENT_RUNNER_WORKSPACE", "") or Path.cwd())
        defaults = PathSettings()
        return cls(
            workspace_root=root,
            log_level=os.getenv("AGENT_RUNNER_LOG_LEVEL", "WARNING").strip().upper(),
            paths=PathSettings(
                agent_dir=Path(os.getenv("AGENT_RUNNER_AGENT_DIR", str(defaults.agent_dir))),
                agent_log_dir=Path(
                    os.getenv("AGENT_RUNNER_AGENT_LOG_DIR", str(defaults.agent_log_dir)),
                ),
                todo_dir=Path(os.getenv("AGENT_RUNNER_TODO_DIR", str(defaults.todo_dir))),
                todo_log_dir=Path(
                    os.getenv("AGENT_RUNNER_TODO_LOG_DIR", str(defaults.todo_log_dir)),
                ),
                history_file=Path(
                    os.getenv("AGENT_RUNNER_HISTORY_FILE", str(defaults.history_file)),
                ),
            ),
            tool=ToolSettings(
                executable=os.getenv("AGENT_RUNNER_EXECUTABLE", "claude"),
                permission_mode=os.getenv("AGENT_RUNNER_PERMISSION_MODE", "auto").strip(),
                output_format=os.getenv("AGENT_RUNNER_OUTPUT_FORMAT", "stream-json").strip(),
                verbose=_env_bool("AGENT_RUNNER_VERBOSE", default=True),
                print_mode=_env_bool("AGENT_RUNNER_PRINT", default=True),
                add_dirs=_env_csv("AGENT_RUNNER_ADD_DIRS"),
                model=os.getenv("AGENT_RUNNER_MODEL") or None,
                mcp_config=os.getenv("AGENT_RUNNER_MCP_CONFIG") or None,
            ),
            viewer=ViewerSettings(
                debounce_seconds=_env_float("AGENT_RUNNER_VIEWER_DEBOUNCE_SECONDS", 0.12),
                poll_interval_seconds=_env_float("AGENT_RUNNER_VIEWER_POLL_INTERVAL_SECONDS", 2.0),
                watch_interval_seconds=_env_float("AGENT_RUNNER_VIEWER_WATCH_INTERVAL_SECONDS", 0.1),
            ),
        )

    def resolve(self, path: Path) -> Path:
        """Resolve a configured path against the workspace root."""

        if path.is_absolute():
            return path
        return self.workspace_root / path

    @property
    def agent_dir(self) -> Path:
        return self.resolve(self.paths.agent_dir)

    @property
    def agent_log_dir(self) -> Path:
        return self.resolve(self.paths.agent_log_dir)

    @property
    def todo_dir(self) -> Path:
        return self.resolve(self.paths.todo_dir)

    @property
    def todo_log_dir(self) -> Path:
        return self.resolve(self.paths.todo_log_dir)

    @property
    def history_file(self) -> Path:
        return self.resolve(self.paths.history_file)

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if not self.tool.executable.strip():
            raise ValueError("AGENT_RUNNER_EXECUTABLE must not be empty.")
        if self.tool.permission_mode not in PERMISSION_MODES:
            raise ValueError(
                "AGENT_RUNNER_PERMISSION_MODE must be one of "
                f"{', '.join(PERMISSION_MODES)}; got {self.tool.permission_mode!r}.",
            )
        if self.tool.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                "AGENT_RUNNER_OUTPUT_FORMAT must be one of "
                f"{', '.join(OUTPUT_FORMATS)}; got {self.tool.output_format!r}.",
            )
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"AGENT_RUNNER_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}; "
                f"got {self.log_level!r}.",
            )
        if self.viewer.debounce_seconds < 0:
            raise ValueError("AGENT_RUNNER_VIEWER_DEBOUNCE_SECONDS must be >= 0.")
        if self.viewer.poll_interval_seconds <= 0:
            raise ValueError("AGENT_RUNNER_VIEWER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.viewer.watch_interval_seconds <= 0:
            raise ValueError("AGENT_RUNNER_VIEWER_WATCH_INTERVAL_SECONDS must be > 0.")


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
