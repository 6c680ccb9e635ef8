from __future__ import annotations

import allure
import pytest

from agent_runner.config import ToolSettings
from agent_runner.execution.command import CommandOptions, build_command, resolve_options

pytestmark = [
    allure.epic("Execution Pipeline"),
    allure.feature("Command Builder"),
]


def test_flags_follow_fixed_order() -> None:
    defaults = CommandOptions(
        skip_permissions=True,
        add_dirs=("/repo/docs",),
        verbose=True,
        print_mode=True,
        model="sonnet",
        mcp_config="mcp.json",
        extra_args=("--max-turns", "3"),
    )

    argv = build_command("claude", defaults, workspace_root="/repo")

    assert argv == [
        "claude",
        "--dangerously-skip-permissions",
        "--add-dir",
        "/repo/docs",
        "--add-dir",
        "/repo",
        "--verbose",
        "--print",
        "--output-format",
        "stream-json",
        "--model",
        "sonnet",
        "--mcp-config",
        "mcp.json",
        "--max-turns",
        "3",
    ]


def test_executable_with_arguments_is_split() -> None:
    argv = build_command("uv run 'my agent'", CommandOptions())

    assert argv == ["uv", "run", "my agent", "--output-format", "stream-json"]


def test_empty_executable_is_rejected() -> None:
    with pytest.raises(ValueError, match="empty"):
        build_command("   ", CommandOptions())


def test_overrides_win_only_when_set() -> None:
    defaults = CommandOptions(verbose=True, print_mode=True, model="sonnet")
    overrides = CommandOptions(verbose=False, model=None, output_format="text")

    resolved = resolve_options(defaults, overrides)

    assert resolved.verbose is False
    assert resolved.print_mode is True
    assert resolved.model == "sonnet"
    assert resolved.output_format == "text"


def test_add_dirs_are_unioned_without_duplicates() -> None:
    defaults = CommandOptions(add_dirs=("a", "b"))
    overrides = CommandOptions(add_dirs=("b", "c"))

    resolved = resolve_options(defaults, overrides, workspace_root="a")

    assert resolved.add_dirs == ("a", "b", "c")


def test_prompt_never_appears_in_argv() -> None:
    argv = build_command("agent", CommandOptions(verbose=True), CommandOptions(model="m"))

    assert all("prompt" not in item for item in argv)


def test_from_settings_maps_permission_mode() -> None:
    options = CommandOptions.from_settings(
        ToolSettings(permission_mode="always-allow", add_dirs=("x",), model="opus"),
    )

    assert options.skip_permissions is True
    assert options.add_dirs == ("x",)
    assert options.model == "opus"
    assert CommandOptions.from_settings(ToolSettings()).skip_permissions is False


def test_from_mapping_accepts_flag_style_keys() -> None:
    options = CommandOptions.from_mapping(
        {
            "--model": "haiku",
            "add_dir": ["src", "tests"],
            "--dangerously-skip-permissions": True,
            "extra-args": "--debug",
        },
    )

    assert options.model == "haiku"
    assert options.add_dirs == ("src", "tests")
    assert options.skip_permissions is True
    assert options.extra_args == ("--debug",)
    assert options.verbose is None
    assert CommandOptions.from_mapping(None) == CommandOptions()


@pytest.mark.parametrize(
    ("raw", "match"),
    [
        ({"--temperature": 0.2}, "Unsupported agent parameter"),
        ({"--verbose": "yes"}, "must be a boolean"),
        ({"--model": 3}, "must be a string"),
        ({"--add-dir": [1, 2]}, "add-dir"),
    ],
)
def test_from_mapping_rejects_bad_parameters(raw: dict, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        CommandOptions.from_mapping(raw)
