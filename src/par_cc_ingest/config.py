"""Configuration management for par_cc_ingest."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .enums import CostMode
from .token_calculator import DEFAULT_PROJECT_NAME_PREFIXES
from .utils import ensure_directory, expand_path
from .xdg_dirs import SUMMARY_CACHE_FILE_NAME, get_cache_dir, get_config_file_path

logger = logging.getLogger(__name__)

ENV_PREFIX = "PAR_CC_INGEST_"

# Fields settable from the environment that hold comma-separated lists
_LIST_FIELDS = {"project_name_prefixes"}


class Config(BaseModel):
    """Main configuration model."""

    projects_dir: Path = Field(
        default_factory=lambda: Path.home() / ".claude" / "projects",
        description="Directory (or single file) holding Claude Code JSONL logs",
    )
    cache_dir: Path = Field(
        default_factory=get_cache_dir,
        description="Directory for the file summary cache and debug log",
    )
    hours_back: int | None = Field(default=192, description="Ignore entries older than this many hours")
    enable_deduplication: bool = Field(default=True, description="Drop repeated messageID:requestID pairs")
    disable_cache: bool = Field(default=False, description="Do not use the on-disk summary store")
    cost_mode: CostMode = Field(default=CostMode.AUTO, description="How entry costs are determined")
    max_workers: int | None = Field(default=None, description="Worker pool size, None for platform default")
    polling_interval: int = Field(default=10, description="Seconds between forced refreshes in monitor mode")
    cache_refresh_interval: int = Field(default=60, description="Seconds between session window cache refreshes")
    fetch_pricing: bool = Field(default=True, description="Fetch LiteLLM pricing instead of only built-in prices")
    project_name_prefixes: list[str] = Field(default_factory=lambda: list(DEFAULT_PROJECT_NAME_PREFIXES))
    log_level: str = Field(default="ERROR", description="Logging level when --debug is not given")

    @field_validator("projects_dir", "cache_dir", mode="before")
    @classmethod
    def expand_paths(cls, value: Any) -> Any:
        """Expand ~ and environment variables in configured paths."""
        if isinstance(value, str | Path):
            return expand_path(value)
        return value

    @field_validator("hours_back", "max_workers", mode="before")
    @classmethod
    def none_or_positive(cls, value: Any) -> Any:
        """Treat empty, 'none' and non-positive values as unset."""
        if value is None:
            return None
        if isinstance(value, str):
            if value.strip().lower() in ("", "none", "null"):
                return None
            value = int(value)
        if isinstance(value, int) and value <= 0:
            return None
        return value

    @field_validator("polling_interval", "cache_refresh_interval")
    @classmethod
    def positive_interval(cls, value: int) -> int:
        """Intervals must be at least one second."""
        if value < 1:
            raise ValueError("interval must be at least 1 second")
        return value

    @field_validator("log_level")
    @classmethod
    def valid_log_level(cls, value: str) -> str:
        """Accept standard logging level names only."""
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {value!r}")
        return level

    def model_post_init(self, __context: Any) -> None:
        """Create the cache directory."""
        ensure_directory(self.cache_dir)

    @property
    def summary_cache_path(self) -> Path:
        """Get the path of the on-disk summary store."""
        return self.cache_dir / SUMMARY_CACHE_FILE_NAME


def _load_yaml(config_file: Path) -> dict[str, Any]:
    """Read a YAML config file, returning an empty mapping when absent."""
    if not config_file.exists():
        return {}
    with open(config_file, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level is not a mapping", config_file)
        return {}
    return data


def _env_overrides() -> dict[str, Any]:
    """Collect PAR_CC_INGEST_* overrides from the environment."""
    overrides: dict[str, Any] = {}
    for name in Config.model_fields:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if name in _LIST_FIELDS:
            overrides[name] = [item.strip() for item in raw.split(",") if item.strip()]
        else:
            overrides[name] = raw
    return overrides


def _claude_projects_dir() -> Path | None:
    """Resolve the projects directory from CLAUDE_CONFIG_DIR.

    The variable may hold a comma-separated list; the first entry with a
    ``projects`` subdirectory wins, otherwise the first existing entry.
    """
    raw = os.environ.get("CLAUDE_CONFIG_DIR")
    if not raw:
        return None
    candidates = [expand_path(item.strip()) for item in raw.split(",") if item.strip()]
    for candidate in candidates:
        if (candidate / "projects").is_dir():
            return candidate / "projects"
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def load_config(config_file: Path | None = None) -> Config:
    """Load configuration from file and environment.

    Precedence, lowest first: defaults, YAML file, ``CLAUDE_CONFIG_DIR``,
    ``PAR_CC_INGEST_*`` environment variables.

    Args:
        config_file: Path to config file (defaults to XDG config location)

    Returns:
        Loaded configuration
    """
    if config_file is None:
        config_file = get_config_file_path()

    data = _load_yaml(Path(config_file))

    projects_dir = _claude_projects_dir()
    if projects_dir is not None:
        data["projects_dir"] = projects_dir

    data.update(_env_overrides())
    return Config.model_validate(data)

