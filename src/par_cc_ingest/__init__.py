"""PAR CC Ingest - incremental, cache-aware ingestion of Claude Code usage logs."""

from __future__ import annotations

__version__ = "0.1.0"
__application_title__ = "PAR CC Ingest"
__application_binary__ = "par_cc_ingest"

__all__: list[str] = [
    "__version__",
    "__application_binary__",
    "__application_title__",
]
