#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class SourceError(Exception):
    """Base class for failures raised while serving a source request.

    Attributes:
        source_id: The source identifier involved, when known.
        details: Optional payload for diagnostics.
    """

    def __init__(self, message: str, source_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.source_id = source_id
        self.details = details or {}


class InvalidSourceError(SourceError):
    """Raised when a source id is unknown after redirect resolution."""

    def __init__(self, source_id: Optional[str] = None):
        super().__init__("Invalid source id", source_id=source_id)


class NoGetterError(SourceError):
    """Raised when a source is registered without any getter."""

    def __init__(self, source_id: Optional[str] = None):
        super().__init__(f"No getter for source: {source_id}", source_id=source_id)


class MalformedFilterInput(ValueError):
    """Raised when the ``filter`` query value cannot be parsed.

    The HTTP layer treats it as an empty rule set; the command line reports it.
    """


class UpstreamFetchError(SourceError):
    """Raised when a source getter or paginated getter fails.

    Attributes:
        status: HTTP status returned by the upstream, if any.
        url: The upstream URL that failed, if any.
    """

    def __init__(self, message: str, source_id: Optional[str] = None, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, source_id=source_id, details={"url": url, "status": status})
        self.url = url
        self.status = status


class CacheUnavailableError(Exception):
    """Raised when the cache backend cannot be read or written."""


__all__ = [
    "SourceError",
    "InvalidSourceError",
    "NoGetterError",
    "MalformedFilterInput",
    "UpstreamFetchError",
    "CacheUnavailableError",
]
