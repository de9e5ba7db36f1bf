"""Configuration paths and build defaults for impactgraph."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("IMPACTGRAPH_HOME", str(Path.home() / ".impactgraph"))).expanduser()
DB_PATH = BASE_DIR / "graph.db"
CONFIG_FILE = BASE_DIR / "config.toml"

DEFAULT_EXCLUDES = (
    "node_modules",
    ".git",
    "__pycache__",
    ".pytest_cache",
    "dist",
    "build",
    ".next",
    "coverage",
    ".venv",
    "venv",
    "vendor",
)
DEFAULT_MAX_FILE_SIZE = 1024 * 1024
DEFAULT_MAX_FILES = 5000
DEFAULT_MAX_DEPTH = 5
DEFAULT_CHAIN_DEPTH = 10
RESOLUTION_POLICIES = ("first_declared", "last_writer")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def ensure_base_dirs() -> None:
    """Create the base directory for the local database if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)


def default_workers() -> int:
    return os.cpu_count() or 4


def log_level(configured: str | None = None) -> str:
    """Resolve the log level: environment first, then config, then INFO."""
    level = os.environ.get("IMPACTGRAPH_LOG_LEVEL") or configured or "INFO"
    level = level.upper()
    return level if level in LOG_LEVELS else "INFO"
