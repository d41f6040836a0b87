"""
Cache store contract and the cached call bundle.

echocache ships no store. Any object offering the six primitives of
CacheStore can back a proxy: a file tree, a Redis namespace, a dict guarded
by a lock. The store owns freshness, expiry and eviction; it must guarantee
that ``lock(path)`` is mutually exclusive per path across every caller and
that ``wait(path)`` only returns True after the lock holder called
``set(path, ...)``.
"""

from __future__ import annotations

from collections import abc
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, Union, runtime_checkable


@dataclass(frozen=True)
class Bundle:
    """Captured output and return value of one operation call."""
    output: str
    result: Any

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping form for stores that persist dictionaries."""
        return {"output": self.output, "result": self.result}

    @classmethod
    def coerce(cls, value: Union["Bundle", Mapping[str, Any]]) -> "Bundle":
        """Accept a Bundle or a mapping with ``output`` and ``result`` keys."""
        if isinstance(value, Bundle):
            return value
        if isinstance(value, abc.Mapping) and "output" in value and "result" in value:
            return cls(output=value["output"] or "", result=value["result"])
        raise TypeError(f"Not a cached bundle: {type(value).__name__}")


StoredBundle = Union[Bundle, Mapping[str, Any]]


@runtime_checkable
class CacheStore(Protocol):
    """Primitives the interceptor needs from a cache store."""

    def get_if_fresh(self, path: str) -> Optional[StoredBundle]:
        """Entry at ``path`` if present and within its TTL, else None."""
        ...

    def get(self, path: str) -> Optional[StoredBundle]:
        """Entry at ``path`` regardless of freshness."""
        ...

    def set(self, path: str, value: Bundle, ttl: float) -> None:
        """Store ``value`` at ``path`` for ``ttl`` seconds and release the lock."""
        ...

    def lock(self, path: str) -> bool:
        """Try to become the single writer for ``path``."""
        ...

    def wait(self, path: str) -> bool:
        """Block until the writer for ``path`` finished; False on timeout."""
        ...

    def descend(self, path: str) -> "CacheStore":
        """Store handle scoped beneath ``path``."""
        ...


__all__ = [
    "Bundle",
    "CacheStore",
    "StoredBundle",
]
