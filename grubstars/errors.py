"""
Error taxonomy shared by the adapters, the indexer and the search layer.
"""
from typing import Any, Dict, Optional


class GrubStarsError(Exception):
    """Base class for all errors raised by grubstars."""


class ConfigurationError(GrubStarsError):
    """An adapter is missing the credentials it needs to make requests."""


class APIError(GrubStarsError):
    """An upstream directory API answered with a non-2xx response."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class RateLimitError(GrubStarsError):
    """The monthly request budget for an adapter is exhausted."""

    def __init__(self, adapter: str, limit: int, current_count: int):
        self.adapter = adapter
        self.limit = limit
        self.current_count = current_count
        super().__init__(
            f"API rate limit exceeded for {adapter}: {current_count}/{limit} requests used"
        )


class NoAdaptersConfiguredError(GrubStarsError):
    """Raised before indexing when no adapter has credentials."""


class IndexingError(GrubStarsError):
    """
    One or more adapters failed during a multi-adapter run.

    Carries the statistics of everything that was ingested before and
    alongside the failure, plus a mapping of adapter name -> error message.
    """

    def __init__(self, message: str, stats: Any, failures: Dict[str, str]):
        super().__init__(message)
        self.stats = stats
        self.failures = failures


class LocationNotIndexedError(GrubStarsError):
    """A search named a location the catalog was never indexed under."""


class RestaurantNotFoundError(GrubStarsError):
    """No restaurant exists with the requested id."""
