"""Exception hierarchy for polled integration sources."""

from __future__ import annotations


class SourceError(Exception):
    """Base exception for all polled-source errors."""


class SourceUnavailableError(SourceError):
    """Endpoint unreachable or returned a non-success status."""


class SourceParseError(SourceError):
    """Response body could not be decoded into the expected shape."""
