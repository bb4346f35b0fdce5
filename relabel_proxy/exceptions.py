"""Exceptions raised by the relabel proxy."""
from typing import Optional


class RelabelProxyError(Exception):
    """Base class for proxy errors."""


class ConfigLoadError(RelabelProxyError):
    """Configuration file could not be read, parsed or validated."""


class FetchError(RelabelProxyError):
    """A scrape target could not be fetched."""

    def __init__(self, message: str, url: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class AllTargetsFailedError(RelabelProxyError):
    """No target produced output during a scrape cycle."""

    def __init__(self, attempted: int, failed: int):
        super().__init__(f"All scrape targets failed ({failed}/{attempted})")
        self.attempted = attempted
        self.failed = failed
