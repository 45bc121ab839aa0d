"""Error taxonomy for the crawl engine.

Transient errors are retried where they occur.  Protocol, asset and
filesystem errors fail the partition or write they belong to.  Fatal
errors abort the whole run.
"""

from __future__ import annotations


class CrawlError(Exception):
    """Base class for every error raised by the crawler."""


class TransientNetworkError(CrawlError):
    """Timeouts, connection resets, 5xx responses."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderProtocolError(CrawlError):
    """The provider answered with something we cannot parse."""


class AssetUnavailableError(CrawlError):
    """The asset URL answered 4xx; retrying will not help."""


class FilesystemError(CrawlError):
    """Writing to the output directory failed (permissions, disk full)."""


class FatalError(CrawlError):
    """Programming or input error; terminates the run."""


class CursorMismatchError(FatalError):
    """A cursor was handed to a provider or partition it does not belong to."""


class InvalidPartitionBounds(FatalError):
    """The crawl request describes an empty or inverted range."""
