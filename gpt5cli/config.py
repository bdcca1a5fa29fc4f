"""Configuration file loading and merging for gpt5cli.

Reads TOML config from ~/.config/gpt5cli/config.toml (global) and
<base_dir>/gpt5cli.toml (project), then environment overrides.
Precedence: CLI > env > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

LEVELS = ("low", "medium", "high")

DEFAULT_HISTORY_FILE = "~/.gpt-5-cli/history_index.json"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "model_mini": str,
    "model_nano": str,
    "effort": str,
    "verbosity": str,
    "max_iterations": int,
    "history_file": str,
    "output_dir": str,
    "prompts_dir": str,
    "web_search_preview": bool,
    "color": bool,
    "api_key": str,
    "base_url": str,
}

# Environment variable -> config key
ENV_KEYS: dict[str, str] = {
    "OPENAI_MODEL_MAIN": "model",
    "OPENAI_MODEL_MINI": "model_mini",
    "OPENAI_MODEL_NANO": "model_nano",
    "OPENAI_DEFAULT_EFFORT": "effort",
    "OPENAI_DEFAULT_VERBOSITY": "verbosity",
    "GPT_5_CLI_MAX_ITERATIONS": "max_iterations",
    "GPT_5_CLI_HISTORY_INDEX_FILE": "history_file",
    "GPT_5_CLI_OUTPUT_DIR": "output_dir",
    "GPT_5_CLI_PROMPTS_DIR": "prompts_dir",
}

DEFAULTS: dict[str, Any] = {
    "model": "gpt-5",
    "model_mini": "gpt-5-mini",
    "model_nano": "gpt-5-nano",
    "effort": "low",
    "verbosity": "low",
    "max_iterations": 10,
    "history_file": DEFAULT_HISTORY_FILE,
    "output_dir": None,
    "prompts_dir": None,
    "web_search_preview": True,
    "api_key": None,
    "base_url": None,
}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "max_iterations": "iterations",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": DEFAULTS["model"],
    "effort": DEFAULTS["effort"],
    "verbosity": DEFAULTS["verbosity"],
    "iterations": DEFAULTS["max_iterations"],
    "output": None,
    "copy": False,
    "color": False,
    "no_color": False,
}

# Options whose explicit use overrides values carried over from history
EXPLICIT_DESTS = ("model", "effort", "verbosity", "output", "copy")


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "gpt5cli"
    return Path.home() / ".config" / "gpt5cli"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    for key in ("effort", "verbosity"):
        if key in config and config[key] not in LEVELS:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(LEVELS)}, got {config[key]!r}"
            )
    if "max_iterations" in config and config["max_iterations"] < 1:
        raise ConfigError(f"{source}: 'max_iterations' must be a positive integer")


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative directory settings against the config file's directory."""
    for key in ("output_dir", "prompts_dir"):
        if key in config:
            expanded = Path(config[key]).expanduser()
            if not expanded.is_absolute():
                expanded = config_dir / config[key]
            config[key] = str(expanded)


def load_env(environ: dict | None = None) -> dict:
    """Read the supported environment overrides.

    Empty values are ignored except for the history path, where an empty
    value is an error.
    """
    if environ is None:
        environ = os.environ
    config: dict = {}
    for env_key, key in ENV_KEYS.items():
        raw = environ.get(env_key)
        if raw is None:
            continue
        value = raw.strip()
        if key == "history_file":
            if not value:
                raise ConfigError(f"{env_key} is set but empty")
            config[key] = value
            continue
        if not value:
            continue
        if key in ("effort", "verbosity"):
            value = value.lower()
            if value not in LEVELS:
                raise ConfigError(
                    f"{env_key} must be one of {', '.join(LEVELS)}, got {raw!r}"
                )
        elif key == "max_iterations":
            if not value.isdigit() or int(value) < 1:
                raise ConfigError(f"{env_key} must be a positive integer, got {raw!r}")
            value = int(value)
        config[key] = value
    return config


# --- Public API ---


def load_config(base_dir: Path, environ: dict | None = None) -> dict:
    """Load and merge global config, project config and environment overrides.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set are included (no defaults injected).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "gpt5cli.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _resolve_paths(project_config, project_path.parent)

    return {**global_config, **project_config, **load_env(environ)}


def resolve_history_path(config: dict) -> Path:
    """Return the absolute history index path, expanding a leading ~."""
    raw = config.get("history_file", DEFAULT_HISTORY_FILE)
    if not raw or not str(raw).strip():
        raise ConfigError("history file path is empty")
    return Path(str(raw).strip()).expanduser().resolve()


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Records ``<dest>_explicit`` for the options that take precedence over
    history, then fills remaining _UNSET sentinels from config and finally
    from the hardcoded defaults.
    """
    for dest in EXPLICIT_DESTS:
        setattr(args, f"{dest}_explicit", getattr(args, dest, _UNSET) is not _UNSET)

    if "color" in config:
        if getattr(args, "color", _UNSET) is _UNSET and getattr(
            args, "no_color", _UNSET
        ) is _UNSET:
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if getattr(args, dest, _UNSET) is _UNSET:
            setattr(args, dest, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if getattr(args, dest, _UNSET) is _UNSET:
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    Drops keys that aren't Session concerns (color) and fills the rest
    from DEFAULTS.
    """
    return {key: config.get(key, default) for key, default in DEFAULTS.items()}


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# gpt5cli configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/gpt5cli.toml' if project else '~/.config/gpt5cli/config.toml'}",
        "#",
        "# CLI flags and environment variables override these values.",
        "",
        "# --- Models ---",
        '# model = "gpt-5"',
        '# model_mini = "gpt-5-mini"      # used by --compact',
        '# model_nano = "gpt-5-nano"',
        '# api_key = "sk-..."               # prefer OPENAI_API_KEY',
        '# base_url = "https://..."',
        "",
        "# --- Request defaults ---",
        '# effort = "low"                   # "low" | "medium" | "high"',
        '# verbosity = "low"                # "low" | "medium" | "high"',
        "# max_iterations = 10",
        "# web_search_preview = true",
        "",
        "# --- Files ---",
        '# history_file = "~/.gpt-5-cli/history_index.json"',
        '# output_dir = "output"',
        '# prompts_dir = "prompts"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "",
    ]
    return "\n".join(lines)
