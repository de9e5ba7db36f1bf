"""Configuration manager for impactgraph using a TOML file.

Only the ``[graph]`` section is owned here; other sections in the file are
preserved on save.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import toml

from . import config
from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class GraphSettings:
    max_file_size: int = config.DEFAULT_MAX_FILE_SIZE
    max_files: int = config.DEFAULT_MAX_FILES
    exclude: List[str] = field(default_factory=list)
    workers: int = field(default_factory=config.default_workers)
    resolution_policy: str = "first_declared"
    log_level: str = "INFO"


_INT_KEYS = ("max_file_size", "max_files", "workers")


def _config_file() -> Path:
    return config.CONFIG_FILE


def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    path = _config_file()
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}


def _save_full_config(payload: Dict[str, Any]) -> None:
    path = _config_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        toml.dump(payload, f)


def _validate(values: Dict[str, Any]) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    for key, value in values.items():
        if key in _INT_KEYS:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"[graph].{key} must be a positive integer, got {value!r}")
            clean[key] = value
        elif key == "exclude":
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ConfigError("[graph].exclude must be a list of strings")
            clean[key] = list(value)
        elif key == "resolution_policy":
            if value not in config.RESOLUTION_POLICIES:
                raise ConfigError(
                    f"[graph].resolution_policy must be one of "
                    f"{', '.join(config.RESOLUTION_POLICIES)}, got {value!r}"
                )
            clean[key] = value
        elif key == "log_level":
            if not isinstance(value, str) or value.upper() not in config.LOG_LEVELS:
                raise ConfigError(f"[graph].log_level must be one of {', '.join(config.LOG_LEVELS)}")
            clean[key] = value.upper()
        else:
            raise ConfigError(f"Unknown [graph] setting: {key}")
    return clean


def load_graph_config() -> GraphSettings:
    """Load ``[graph]`` settings, falling back to defaults for missing keys.

    Raises:
        ConfigError: when a present key has an invalid value.
    """
    section = load_full_config().get("graph", {})
    if not isinstance(section, dict):
        raise ConfigError("[graph] must be a table")
    return GraphSettings(**_validate(section))


def save_graph_config(**values: Any) -> GraphSettings:
    """Merge *values* into the ``[graph]`` section and write the file.

    Returns:
        The effective settings after the save.
    """
    clean = _validate(values)
    payload = load_full_config()
    section = dict(payload.get("graph", {}))
    section.update(clean)
    payload["graph"] = section
    _save_full_config(payload)
    return GraphSettings(**_validate(section))


def reset_graph_config() -> None:
    """Remove the ``[graph]`` section, resetting to defaults."""
    payload = load_full_config()
    if payload.pop("graph", None) is not None:
        _save_full_config(payload)


def parse_setting(key: str, raw: str) -> Tuple[str, Any]:
    """Convert a ``key=value`` string from the command line to a typed pair."""
    if key in _INT_KEYS:
        try:
            return key, int(raw)
        except ValueError as exc:
            raise ConfigError(f"{key} must be an integer") from exc
    if key == "exclude":
        return key, [part.strip() for part in raw.split(",") if part.strip()]
    return key, raw


def settings_as_dict(settings: Optional[GraphSettings] = None) -> Dict[str, Any]:
    settings = settings or load_graph_config()
    return {
        "max_file_size": settings.max_file_size,
        "max_files": settings.max_files,
        "exclude": list(settings.exclude),
        "workers": settings.workers,
        "resolution_policy": settings.resolution_policy,
        "log_level": settings.log_level,
    }
