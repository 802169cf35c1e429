"""
Configuration loader for stepflow.

Loads engine settings from a stepflow.env file of KEY=value lines. The
file is read as data, never sourced by a shell. Every key is optional;
a missing file yields the defaults.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "stepflow.env"

DEFAULT_STATE_DIR = ".stepflow/state"
DEFAULT_WORKFLOWS_DIR = "."
DEFAULT_STATUS_FILE = "docs/workflow-status.md"
DEFAULT_LOCK_TIMEOUT = 60
DEFAULT_MAX_STEPS = 1000
DEFAULT_MAX_DEPTH = 10

KNOWN_KEYS = frozenset({
    "STATE_DIR", "WORKFLOWS_DIR", "STATUS_FILE", "LOCK_TIMEOUT", "MAX_STEPS", "MAX_DEPTH",
})

# Command substitution, expansion, chaining and pipes
_SHELL_SYNTAX = re.compile(r"`|\$[({]|;|&&|\|")


@dataclass
class EngineConfig:
    """Engine settings from stepflow.env"""
    state_dir: Path  # Where .<workflow>.state.json records live
    workflows_dir: Path  # Base for relative workflow_path / routing entries
    status_file: Path  # Default story status document for load_state_machine
    lock_timeout: int  # Seconds to wait for a per-instance lock
    max_steps: int  # Safety cap for run_workflow's loop
    max_depth: int  # Deepest allowed sub-workflow nesting


def parse_config_text(text: str) -> dict[str, str]:
    """Parse stepflow.env content into {KEY: value}.

    Blank lines and # comments are skipped, one pair of surrounding quotes
    is stripped, unknown keys are ignored with a warning.

    Raises:
        ValueError: on a line without '=' or a value containing shell syntax
    """
    settings = {}
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ValueError(f"Line {lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if _SHELL_SYNTAX.search(value):
            raise ValueError(f"Line {lineno}: Shell syntax not allowed in value for {key}")

        if key not in KNOWN_KEYS:
            logger.warning(f"Line {lineno}: Ignoring unknown setting {key}")
            continue
        settings[key] = value
    return settings


def _int_setting(env: dict, key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Unknown {key} '{raw}', using default {default}")
        return default
    if value < 0:
        logger.warning(f"Negative {key} '{raw}', using default {default}")
        return default
    return value


def _path_setting(env: dict, key: str, default: str, base_dir: Path) -> Path:
    path = Path(env.get(key) or default)
    if not path.is_absolute():
        path = base_dir / path
    return path


def load_engine_config(config_path: Path | None = None) -> EngineConfig:
    """Load stepflow.env and return EngineConfig.

    Relative paths are resolved against the directory holding the env file
    (or the current directory when no file is given).

    Raises:
        ValueError: if the env file has invalid syntax
    """
    if config_path is None:
        config_path = Path.cwd() / DEFAULT_CONFIG_FILE
    config_path = Path(config_path)
    base_dir = config_path.parent.resolve()

    env: dict[str, str] = {}
    if config_path.exists():
        env = parse_config_text(config_path.read_text())
    else:
        logger.debug(f"No config at {config_path}, using defaults")

    return EngineConfig(
        state_dir=_path_setting(env, "STATE_DIR", DEFAULT_STATE_DIR, base_dir),
        workflows_dir=_path_setting(env, "WORKFLOWS_DIR", DEFAULT_WORKFLOWS_DIR, base_dir),
        status_file=_path_setting(env, "STATUS_FILE", DEFAULT_STATUS_FILE, base_dir),
        lock_timeout=_int_setting(env, "LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT),
        max_steps=_int_setting(env, "MAX_STEPS", DEFAULT_MAX_STEPS),
        max_depth=_int_setting(env, "MAX_DEPTH", DEFAULT_MAX_DEPTH),
    )
