"""Configuration loading and constants for the convoy scheduler."""

import copy
import os
from pathlib import Path
from typing import Any, Literal

import yaml

from .exceptions import ConfigError


# ---------------------------------------------------------------------------
# Convoy states
# ---------------------------------------------------------------------------

ConvoyStatus = Literal[
    "staged:ready",
    "staged:warnings",
    "open",
    "closed",
]

STATUS_STAGED_READY: ConvoyStatus = "staged:ready"
STATUS_STAGED_WARNINGS: ConvoyStatus = "staged:warnings"
STATUS_OPEN: ConvoyStatus = "open"
STATUS_CLOSED: ConvoyStatus = "closed"

STAGED_STATUSES: list[ConvoyStatus] = [STATUS_STAGED_READY, STATUS_STAGED_WARNINGS]

# Allowed convoy status transitions. Anything not listed is rejected; in
# particular open/closed can never go back to a staged status.
CONVOY_TRANSITIONS: dict[str, set[str]] = {
    STATUS_STAGED_READY: {STATUS_STAGED_WARNINGS, STATUS_STAGED_READY, STATUS_OPEN, STATUS_CLOSED},
    STATUS_STAGED_WARNINGS: {STATUS_STAGED_READY, STATUS_STAGED_WARNINGS, STATUS_OPEN, STATUS_CLOSED},
    STATUS_OPEN: {STATUS_CLOSED},
    STATUS_CLOSED: {STATUS_OPEN},
}


# ---------------------------------------------------------------------------
# Work item states and types
# ---------------------------------------------------------------------------

ItemStatus = Literal["open", "in_progress", "hooked", "closed"]

ITEM_STATUSES: list[ItemStatus] = ["open", "in_progress", "hooked", "closed"]

# Statuses that mean an agent is already working the item
IN_FLIGHT_STATUSES: list[ItemStatus] = ["in_progress", "hooked"]

# Leaf work types that may be dispatched. "" is a legacy item with no type
# and is treated as a task.
DISPATCHABLE_TYPES = {"task", "bug", "feature", "chore", ""}

CONTAINER_TYPES = {"epic", "sub-epic"}

TYPE_CONVOY = "convoy"


# ---------------------------------------------------------------------------
# Dependency edge types
# ---------------------------------------------------------------------------

# Edges that gate wave assignment and runtime dispatch
EXECUTION_DEP_TYPES = {"blocks", "conditional-blocks", "waits-for"}

DEP_TRACKS = "tracks"
DEP_PARENT_CHILD = "parent-child"

# Ignored by the scheduler entirely
INFORMATIONAL_DEP_TYPES = {"related", "discovered-from"}


# ---------------------------------------------------------------------------
# Defaults (overridable in .convoy/config.yaml)
# ---------------------------------------------------------------------------

HQ_STORE = "hq"

DEFAULTS: dict[str, Any] = {
    "stores": {
        HQ_STORE: {"path": "hq.db"},
    },
    "routes": [],
    "targets": {},
    "scheduler": {
        "event_poll_interval": 5,
        "scan_interval": 30,
        "recovery_scan_interval": 5,
        "startup_sweep_delay": 10,
        "store_timeout": 30,
        "dispatch_timeout": 120,
        "fail_open_ceiling": 600,
    },
    "staging": {
        "wave_capacity": 5,
    },
    "commands": {
        "dispatch": ["gt", "sling", "{item_id}", "{target}", "--no-boot"],
        "stranded": ["convoy", "stranded", "--json"],
        "check": ["convoy", "check", "{convoy_id}"],
    },
}


def get_convoy_dir() -> Path:
    """Get the .convoy workspace directory.

    Can be overridden via CONVOY_DIR environment variable (used by tests).
    """
    env_override = os.environ.get("CONVOY_DIR")
    if env_override:
        return Path(env_override)
    return Path.cwd() / ".convoy"


def get_config_path() -> Path:
    """Get path to .convoy/config.yaml."""
    return get_convoy_dir() / "config.yaml"


def get_logs_dir() -> Path:
    """Get the logs directory."""
    return get_convoy_dir() / "logs"


def get_daemon_lock_path() -> Path:
    """Get path to the single-daemon lock file."""
    return get_convoy_dir() / "daemon.lock"


def _merge(base: dict, override: dict) -> dict:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict) and key != "stores":
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config() -> dict[str, Any]:
    """Load .convoy/config.yaml merged over DEFAULTS.

    Returns:
        Full configuration dict. A missing file yields the defaults.

    Raises:
        ConfigError: If the file exists but is not valid YAML or not a mapping
    """
    path = get_config_path()
    if not path.exists():
        return copy.deepcopy(DEFAULTS)

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return copy.deepcopy(DEFAULTS)
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")

    return _merge(DEFAULTS, data)


def get_scheduler_settings(config: dict[str, Any] | None = None) -> dict[str, float]:
    """Return scheduler interval/timeout settings as floats (seconds)."""
    config = config or load_config()
    return {k: float(v) for k, v in config.get("scheduler", {}).items()}


def get_wave_capacity(config: dict[str, Any] | None = None) -> int:
    """Maximum tasks in a wave before a capacity warning is emitted."""
    config = config or load_config()
    return int(config.get("staging", {}).get("wave_capacity", 5))


def get_routes(config: dict[str, Any] | None = None) -> list[dict[str, str]]:
    """Return the prefix route table.

    Each route is a dict with ``prefix``, ``target`` and optionally ``store``.
    Prefixes are normalised to end with a hyphen.
    """
    config = config or load_config()
    routes = []
    for entry in config.get("routes") or []:
        prefix = str(entry.get("prefix", "")).strip()
        if not prefix:
            continue
        if not prefix.endswith("-"):
            prefix += "-"
        routes.append({
            "prefix": prefix,
            "target": str(entry.get("target") or ""),
            "store": str(entry.get("store") or ""),
        })
    return routes


def is_target_paused(target: str, config: dict[str, Any] | None = None) -> bool:
    """Check whether a target environment is paused.

    A target is paused if ``targets.<name>.paused`` is true in config.yaml or
    a ``.convoy/PAUSE-<name>`` marker file exists.
    """
    if not target:
        return False
    if (get_convoy_dir() / f"PAUSE-{target}").exists():
        return True
    config = config or load_config()
    target_cfg = (config.get("targets") or {}).get(target) or {}
    return bool(target_cfg.get("paused", False))


def get_command(name: str, config: dict[str, Any] | None = None) -> list[str]:
    """Return the argv template for a named external command."""
    config = config or load_config()
    command = (config.get("commands") or {}).get(name)
    if not command:
        raise ConfigError(f"No command configured for '{name}'")
    if isinstance(command, str):
        return command.split()
    return [str(part) for part in command]
