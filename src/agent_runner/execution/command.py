"""Deterministic argument lists for the external agent CLI."""

from __future__ import annotations

import shlex
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agent_runner.config import ToolSettings

DEFAULT_OUTPUT_FORMAT = "stream-json"


@dataclass(slots=True)
class CommandOptions:
    """Flag values for one invocation; `None` means "not set here"."""

    skip_permissions: bool | None = None
    add_dirs: tuple[str, ...] = ()
    verbose: bool | None = None
    print_mode: bool | None = None
    output_format: str | None = None
    model: str | None = None
    mcp_config: str | None = None
    extra_args: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, tool: ToolSettings) -> CommandOptions:
        """Default options derived from tool settings."""

        return cls(
            skip_permissions=tool.permission_mode == "always-allow",
            add_dirs=tuple(tool.add_dirs),
            verbose=tool.verbose,
            print_mode=tool.print_mode,
            output_format=tool.output_format,
            model=tool.model,
            mcp_config=tool.mcp_config,
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> CommandOptions:
        """Parse a parameter block such as `{"--model": "x", "--add-dir": ["a"]}`."""

        if not raw:
            return cls()

        values: dict[str, Any] = {}
        for key, value in raw.items():
            name = _OPTION_ALIASES.get(str(key).lstrip("-").strip().lower().replace("_", "-"))
            if name is None:
                raise ValueError(f"Unsupported agent parameter: {key!r}")
            values[name] = value

        return cls(
            skip_permissions=_optional_bool(values, "skip_permissions"),
            add_dirs=_string_tuple(values.get("add_dirs"), "add-dir"),
            verbose=_optional_bool(values, "verbose"),
            print_mode=_optional_bool(values, "print_mode"),
            output_format=_optional_str(values, "output_format"),
            model=_optional_str(values, "model"),
            mcp_config=_optional_str(values, "mcp_config"),
            extra_args=_string_tuple(values.get("extra_args"), "extra-args"),
        )


_OPTION_ALIASES = {
    "dangerously-skip-permissions": "skip_permissions",
    "skip-permissions": "skip_permissions",
    "add-dir": "add_dirs",
    "add-dirs": "add_dirs",
    "verbose": "verbose",
    "print": "print_mode",
    "output-format": "output_format",
    "model": "model",
    "mcp-config": "mcp_config",
    "extra-args": "extra_args",
}


def resolve_options(
    defaults: CommandOptions,
    overrides: CommandOptions | None,
    *,
    workspace_root: str | None = None,
) -> CommandOptions:
    """Merge per-call options over defaults; directory lists are unioned."""

    overrides = overrides or CommandOptions()
    return CommandOptions(
        skip_permissions=_pick(overrides.skip_permissions, defaults.skip_permissions),
        add_dirs=_union(
            defaults.add_dirs,
            overrides.add_dirs,
            (workspace_root,) if workspace_root else (),
        ),
        verbose=_pick(overrides.verbose, defaults.verbose),
        print_mode=_pick(overrides.print_mode, defaults.print_mode),
        output_format=_pick(overrides.output_format, defaults.output_format),
        model=_pick(overrides.model, defaults.model),
        mcp_config=_pick(overrides.mcp_config, defaults.mcp_config),
        extra_args=tuple(defaults.extra_args) + tuple(overrides.extra_args),
    )


def build_command(
    executable: str,
    defaults: CommandOptions,
    overrides: CommandOptions | None = None,
    *,
    workspace_root: str | None = None,
) -> list[str]:
    """Render the argv list; the prompt is never part of it."""

    head = shlex.split(executable.strip())
    if not head:
        raise ValueError("Agent executable is empty.")

    options = resolve_options(defaults, overrides, workspace_root=workspace_root)
    argv = list(head)
    if options.skip_permissions:
        argv.append("--dangerously-skip-permissions")
    for directory in options.add_dirs:
        argv.extend(["--add-dir", directory])
    if options.verbose:
        argv.append("--verbose")
    if options.print_mode:
        argv.append("--print")
    argv.extend(["--output-format", options.output_format or DEFAULT_OUTPUT_FORMAT])
    if options.model:
        argv.extend(["--model", options.model])
    if options.mcp_config:
        argv.extend(["--mcp-config", options.mcp_config])
    argv.extend(options.extra_args)
    return argv


def _pick(override: Any, default: Any) -> Any:
    return override if override is not None else default


def _union(*groups: Iterable[str]) -> tuple[str, ...]:
    merged: list[str] = []
    for group in groups:
        for value in group:
            if value and value not in merged:
                merged.append(value)
    return tuple(merged)


def _optional_bool(values: dict[str, Any], name: str) -> bool | None:
    if name not in values or values[name] is None:
        return None
    value = values[name]
    if not isinstance(value, bool):
        raise ValueError(f"Agent parameter {name} must be a boolean, got {value!r}")
    return value


def _optional_str(values: dict[str, Any], name: str) -> str | None:
    if name not in values or values[name] is None:
        return None
    value = values[name]
    if not isinstance(value, str):
        raise ValueError(f"Agent parameter {name} must be a string, got {value!r}")
    return value


def _string_tuple(value: Any, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list | tuple) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise ValueError(f"Agent parameter {label} must be a string or list of strings")
