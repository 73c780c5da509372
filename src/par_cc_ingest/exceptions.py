"""Exception hierarchy for PAR CC Ingest."""

from __future__ import annotations


class ParCCIngestError(Exception):
    """Base class for all errors raised by this package."""


class FileDiscoveryError(ParCCIngestError):
    """The data path could not be walked at all."""


class FileProcessingError(ParCCIngestError):
    """A single log file could not be opened or read."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class SummaryStoreError(ParCCIngestError):
    """A summary store read, write or invalidation failed."""


class PricingError(ParCCIngestError):
    """Pricing for a model is unknown or could not be retrieved."""


class NoUsageDataError(ParCCIngestError):
    """A load completed but produced zero usage entries."""


class LoadCancelledError(ParCCIngestError):
    """A load was cancelled before all files were processed."""


class DataUnavailableError(ParCCIngestError):
    """Fresh data could not be fetched and no cached result exists."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts
