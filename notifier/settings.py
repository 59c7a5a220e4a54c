"""Notifier settings: built-in defaults, then config/settings.yaml, then NOTIFIER_* environment variables."""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from notifier.events.streams import StreamNames

_DEFAULTS: dict[str, Any] = {
    # "redis" for production, "sqlite" for a single host or local development
    "backend": "redis",
    "redis": {
        "url": "redis://localhost:6379/0",
    },
    "sqlite": {
        "db_path": "data/notifier.db",
        "busy_timeout": 5000,
    },
    "stream": {
        "name": StreamNames.NOTIFICATIONS,
        "group": StreamNames.GROUP,
        # None: derived from hostname and pid at startup
        "consumer": None,
        "dead_letter": StreamNames.DEAD_LETTER,
        "retry_queue": StreamNames.RETRY_QUEUE,
    },
    "worker": {
        "max_retries": 3,
        "min_idle_time_ms": 10000,
        "reclaim_batch_size": 10,
        "read_batch_size": 1,
        "block_ms": 5000,
    },
    "backoff": {
        "base_ms": 1000,
        "cap_ms": 60000,
        "jitter": 0.1,
    },
    "idempotency": {
        # Both default to one day; keep them above the longest time an event can spend in the pipeline
        "lock_ttl": 86400,
        "processed_ttl": 86400,
    },
    "promoter": {
        "poll_interval": 1.0,
        "batch_size": 100,
    },
    "logging": {
        "file": None,
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

# NOTIFIER_* variable -> dot path it replaces. Values are taken as strings.
_ENV_OVERRIDES = {
    "NOTIFIER_BACKEND": "backend",
    "NOTIFIER_REDIS_URL": "redis.url",
    "NOTIFIER_CONSUMER": "stream.consumer",
    "NOTIFIER_LOG_LEVEL": "logging.level",
}

_SETTINGS_FILE = "settings.yaml"
_DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

logger = logging.getLogger(__name__)

_loaded: dict[Path, dict[str, Any]] = {}


def _overlay(target: dict[str, Any], source: dict[str, Any]) -> None:
    """Copy source onto target section by section. A null in source keeps the target value."""
    for key, value in source.items():
        if value is None:
            continue
        section = target.get(key)
        if isinstance(section, dict) and isinstance(value, dict):
            _overlay(section, value)
        else:
            target[key] = value


def _read_settings_file(path: Path) -> dict[str, Any]:
    """Top-level mapping of a YAML file; {} when the file is absent or unusable."""
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Ignoring %s, using defaults: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected a mapping at top level", path)
        return {}
    return data


def _env_overlay() -> dict[str, Any]:
    """Nested mapping built from the NOTIFIER_* variables that are set and non-empty."""
    overlay: dict[str, Any] = {}
    for env_name, path in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        *sections, leaf = path.split(".")
        node = overlay
        for section in sections:
            node = node.setdefault(section, {})
        node[leaf] = value
    return overlay


def get_default_settings() -> dict[str, Any]:
    """Fresh copy of the built-in defaults; callers may mutate it."""
    return copy.deepcopy(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Value at a dot path such as 'worker.max_retries', or default when any step is missing."""
    node: Any = settings
    for step in path.split("."):
        if not isinstance(node, dict) or step not in node:
            return default
        node = node[step]
    return node


def reload_settings() -> None:
    """Forget loaded settings so the next load_settings() reads file and environment again."""
    _loaded.clear()


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Settings for a config directory (default: <project>/config), loaded once per directory."""
    key = (config_dir or _DEFAULT_CONFIG_DIR).resolve()
    if key not in _loaded:
        settings = get_default_settings()
        _overlay(settings, _read_settings_file(key / _SETTINGS_FILE))
        _overlay(settings, _env_overlay())
        _loaded[key] = settings
    return _loaded[key]
