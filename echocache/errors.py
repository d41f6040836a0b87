"""
Exception hierarchy for echocache.

Target failures are never wrapped: whatever the wrapped operation raises
reaches the caller unchanged. Only failures that originate in echocache
itself or in the cache store surface as the types below.
"""

from __future__ import annotations

from typing import Optional


class EchoCacheError(Exception):
    """Base exception for echocache failures."""
    pass


class KeySerializationError(EchoCacheError, TypeError):
    """Arguments could not be canonically serialized into a cache key."""

    def __init__(self, message: str, location: str = "$"):
        self.location = location
        super().__init__(f"{message} (at {location})")


class StoreUnavailableError(EchoCacheError):
    """A cache store primitive failed or broke its contract."""

    def __init__(
        self,
        message: str,
        operation: str = "",
        path: Optional[str] = None,
    ):
        self.operation = operation
        self.path = path
        super().__init__(message)


class CacheControlError(EchoCacheError, ValueError):
    """A cache control policy produced an unusable TTL."""
    pass
