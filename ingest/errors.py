"""Exception types raised by the ingestion pipeline.

Parse shortfalls are not exceptions; see :mod:`ingest.validation`.
"""

__all__ = [
    "IngestError",
    "FetchError",
    "TransientFetchError",
    "ImageError",
    "StoreReadError",
    "StoreWriteError",
    "RobotsDisallowedError",
]


class IngestError(Exception):
    """Base class for pipeline errors."""
    pass


class TransientFetchError(IngestError):
    """Retryable fetch failure: non-2xx status, timeout or dropped connection."""

    def __init__(self, url: str, message: str, status_code: int = 0):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status_code = status_code


class FetchError(IngestError):
    """Terminal fetch failure after all retries were spent."""

    def __init__(self, url: str, message: str = "fetch failed"):
        super().__init__(f"{message}: {url}")
        self.url = url


class ImageError(IngestError):
    """A single image could not be downloaded or transcoded."""
    pass


class StoreReadError(IngestError, ValueError):
    """The product store exists but does not hold a readable JSON array."""
    pass


class StoreWriteError(IngestError):
    """The product store could not be written after retrying."""
    pass


class RobotsDisallowedError(IngestError):
    """robots.txt forbids crawling the seed URL."""
    pass
