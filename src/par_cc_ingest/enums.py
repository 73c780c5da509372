"""Enumerations used throughout the ingestion pipeline."""

from __future__ import annotations

from enum import Enum


class CostMode(str, Enum):
    """How the cost of a usage entry is determined."""

    AUTO = "auto"
    CACHED = "cached"
    CALCULATE = "calculate"


class CacheMissReason(str, Enum):
    """Why a summary cache lookup did not short-circuit parsing."""

    NEW_FILE = "new_file"
    MODIFIED_FILE = "modified_file"
    NO_ASSISTANT_MESSAGES = "no_assistant_messages"
    OTHER = "other"


class ModelType(str, Enum):
    """Normalized Claude model families."""

    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"
    UNKNOWN = "unknown"


class LoadMode(str, Enum):
    """Which Data Manager path produced an analysis result."""

    INITIAL = "initial"
    INITIAL_CACHED = "initial-cached"
    WATCH = "watch"
