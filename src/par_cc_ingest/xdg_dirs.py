"""XDG Base Directory Specification utilities for par_cc_ingest."""

from __future__ import annotations

from pathlib import Path

from xdg_base_dirs import xdg_cache_home, xdg_config_home

APP_DIR_NAME = "par_cc_ingest"
SUMMARY_CACHE_FILE_NAME = "file_summaries.json"


def get_config_dir() -> Path:
    """Get the XDG config directory for par_cc_ingest.

    Returns:
        Path to config directory (typically ~/.config/par_cc_ingest)
    """
    return xdg_config_home() / APP_DIR_NAME


def get_cache_dir() -> Path:
    """Get the XDG cache directory for par_cc_ingest.

    Returns:
        Path to cache directory (typically ~/.cache/par_cc_ingest)
    """
    return xdg_cache_home() / APP_DIR_NAME


def get_config_file_path() -> Path:
    """Get the path to the main configuration file.

    Returns:
        Path to config.yaml in XDG config directory
    """
    return get_config_dir() / "config.yaml"
