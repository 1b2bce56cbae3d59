"""TOML configuration for gantry.

Two files are read: the global one in ~/.config/gantry/config.toml (or under
$XDG_CONFIG_HOME) and the project one, <base_dir>/gantry.toml. Command-line
flags win over the project file, which wins over the global file.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .messages import OperatingMode
from .model import PROVIDERS
from .report import ConfigError

_UNSET = object()  # argparse default meaning "flag not given"

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "max_context_tokens": int,
    "temperature": (int, float),
    "max_rounds": int,
    "max_nudges": int,
    "mode": str,
    "non_interactive": bool,
    "system_prompt": str,
    "no_system_prompt": bool,
    "auto_allow": list,
    "disable_tools": list,
    "disable_tool_models": list,
    "unrestricted": bool,
    "color": bool,
    "quiet": bool,
    "log_level": str,
}

_STRING_LISTS = {"auto_allow", "disable_tools", "disable_tool_models"}

# Repeatable flags use None, not _UNSET, as their "not given" marker.
_APPEND_DESTS = {"auto_allow", "disable_tools"}

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "openai-compatible",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "max_context_tokens": None,
    "temperature": None,
    "max_rounds": 100,
    "max_nudges": 2,
    "mode": "normal",
    "non_interactive": False,
    "system_prompt": None,
    "no_system_prompt": False,
    "auto_allow": [],
    "disable_tools": [],
    "disable_tool_models": [],
    "unrestricted": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "log_level": "WARNING",
}


def global_config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "gantry"


def _describe(expected: type | tuple[type, ...]) -> str:
    types = expected if isinstance(expected, tuple) else (expected,)
    return " or ".join(t.__name__ for t in types)


def _check_type(source: str, key: str, value: Any) -> None:
    expected = CONFIG_KEYS[key]
    # TOML booleans are ints to isinstance()
    wrong = isinstance(value, bool) and expected is not bool
    if wrong or not isinstance(value, expected):
        raise ConfigError(
            f"{source}: {key!r} expected {_describe(expected)}, got {type(value).__name__}"
        )
    if key in _STRING_LISTS:
        bad = next((i for i, item in enumerate(value) if not isinstance(item, str)), None)
        if bad is not None:
            raise ConfigError(
                f"{source}: {key}[{bad}]: expected string, got {type(value[bad]).__name__}"
            )


def _check_values(source: str, config: dict) -> None:
    provider = config.get("provider")
    if provider is not None and provider not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, got {provider!r}"
        )
    if "mode" in config:
        try:
            OperatingMode.parse(config["mode"])
        except ValueError as e:
            raise ConfigError(f"{source}: {e}") from None
    level = config.get("log_level")
    if level is not None and level.upper() not in _LOG_LEVELS:
        raise ConfigError(f"{source}: unknown log_level {level!r}")
    for key in ("max_rounds", "max_output_tokens"):
        if config.get(key, 1) < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")
    if config.get("max_nudges", 0) < 0:
        raise ConfigError(f"{source}: 'max_nudges' must not be negative")
    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _validate_config(config: dict, source: str) -> None:
    """Raise ConfigError on a bad type or value; unknown keys only warn."""
    for key, value in config.items():
        if key in CONFIG_KEYS:
            _check_type(source, key, value)
        else:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
    _check_values(source, config)


def _warn_tracked_api_key(config: dict, config_path: Path) -> None:
    if "api_key" not in config:
        return
    if any((d / ".git").exists() for d in config_path.parents):
        print(
            f"warning: {config_path}: this file sets 'api_key' and lives in a git "
            "checkout; keep keys in the environment instead so they are not committed.",
            file=sys.stderr,
        )


def _read_toml(path: Path) -> dict:
    """Parsed and validated contents of *path*, or {} when it doesn't exist."""
    if not path.is_file():
        return {}
    try:
        config = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    _validate_config(config, str(path))
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


def load_config(base_dir: Path) -> dict:
    """Merged global and project settings.

    Only keys present in one of the files appear in the result; defaults
    are filled in later by apply_config_to_args().
    """
    merged = _read_toml(global_config_dir() / "config.toml")

    project_path = Path(base_dir).resolve() / "gantry.toml"
    project = _read_toml(project_path)
    _warn_tracked_api_key(project, project_path)
    merged.update(project)

    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill every flag the user didn't pass, first from *config*, then from defaults."""

    def unset(dest: str) -> bool:
        value = getattr(args, dest, _UNSET)
        return value is None if dest in _APPEND_DESTS else value is _UNSET

    if "color" in config and unset("color") and unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key != "color" and unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if unset(dest):
            setattr(args, dest, list(default) if isinstance(default, list) else default)


def config_to_session_kwargs(config: dict) -> dict:
    """Map config keys onto Session() keyword arguments.

    ``quiet`` becomes ``verbose=not quiet``; ``color`` and ``log_level`` only
    matter to the CLI and are dropped.
    """
    kwargs = {k: v for k, v in config.items() if k not in ("color", "log_level", "quiet")}
    if "quiet" in config:
        kwargs["verbose"] = not config["quiet"]
    return kwargs


_TEMPLATE = """\
# gantry configuration file
# {scope} config: {where}
#
# Every setting is optional and command-line flags take precedence.
# Remove the leading '#' from the lines you want.

# [model]
# provider = "openai-compatible"  # or "openrouter", "openai", "anthropic", "ollama"
# model = "qwen/qwen3-coder-30b"
# api_key = "sk-..."               # an environment variable is safer
# base_url = "http://127.0.0.1:1234/v1"
# max_output_tokens = 8192
# max_context_tokens = 131072
# temperature = 0.7

# [conversation]
# max_rounds = 100
# max_nudges = 2
# mode = "normal"                  # or "auto-accept", "plan"
# non_interactive = false
# system_prompt = "You are a helpful coding assistant."
# no_system_prompt = false

# [tools]
# auto_allow = ["execute_bash"]    # run these without asking
# disable_tools = ["execute_bash"]
# disable_tool_models = ["some-model-without-tool-calling"]
# unrestricted = false             # allow file tools outside the base directory

# [display]
# color = true                     # leave unset to detect the terminal
# quiet = false
# log_level = "WARNING"
"""


def generate_config(project: bool = False) -> str:
    """Commented-out config file listing every key with its default."""
    if project:
        return _TEMPLATE.format(scope="Project", where="<project>/gantry.toml")
    return _TEMPLATE.format(scope="Global", where="~/.config/gantry/config.toml")
