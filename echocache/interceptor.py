"""
Stampede-protected cache resolution.

For every intercepted call the interceptor walks one path through this
state machine:

    ┌───────┐ fresh  ┌───────────┐
    │ CHECK ├───────►│ HIT       │
    └───┬───┘        └───────────┘
        │ miss
    ┌───▼───┐ got it ┌───────────┐   ┌─────┐
    │ LOCK  ├───────►│ COMPUTE   ├──►│ SET │
    └───┬───┘        └───────────┘   └─────┘
        │ taken
    ┌───▼───┐ done   ┌───────────┐
    │ WAIT  ├───────►│ GET       │
    └───┬───┘        └───────────┘
        │ timed out
    ┌───▼─────────────┐
    │ FALLBACK COMPUTE│  (never written to the store)
    └─────────────────┘

The interceptor holds no locks of its own. Mutual exclusion per path and
the wait timeout both belong to the store.
"""

from __future__ import annotations

import math
import numbers
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from echocache.errors import CacheControlError, EchoCacheError, StoreUnavailableError
from echocache.invoker import Invoker
from echocache.observability import EchoLogger, Layer, get_logger
from echocache.store import Bundle, CacheStore


@dataclass(frozen=True)
class CacheControlContext:
    """What a cache control callable gets to decide the TTL from."""
    target: Any
    method: str
    arguments: Tuple[Any, ...]
    keyword_arguments: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Bundle] = None


CacheControl = Union[int, float, Callable[[CacheControlContext], float]]


class Outcome(Enum):
    """How a call was resolved."""
    HIT = "hit"
    COMPUTED = "computed"
    WAITED = "waited"
    FALLBACK = "fallback"


class InterceptorMetrics:
    """Resolution counters with thread-safe updates."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.computes = 0
        self.waits = 0
        self.fallbacks = 0
        self.failures = 0

    def record(self, outcome: Outcome) -> None:
        with self._lock:
            if outcome is Outcome.HIT:
                self.hits += 1
                return
            self.misses += 1
            if outcome is Outcome.COMPUTED:
                self.computes += 1
            elif outcome is Outcome.WAITED:
                self.waits += 1
            else:
                self.fallbacks += 1

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1

    @property
    def total_requests(self) -> int:
        with self._lock:
            return self.hits + self.misses

    @property
    def hit_ratio(self) -> float:
        """Share of calls served straight from a fresh entry (0.0 - 1.0)."""
        with self._lock:
            total = self.hits + self.misses
            if total == 0:
                return 0.0
            return self.hits / total

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "computes": self.computes,
                "waits": self.waits,
                "fallbacks": self.fallbacks,
                "failures": self.failures,
                "total_requests": total,
                "hit_ratio": round(self.hits / total, 4) if total else 0.0,
            }


def _validate_ttl(ttl: Any, method: str) -> float:
    if isinstance(ttl, bool) or not isinstance(ttl, numbers.Real):
        raise CacheControlError(
            f"Cache control for {method}() returned {type(ttl).__name__}, expected seconds"
        )
    ttl = float(ttl)
    if math.isnan(ttl) or ttl < 0:
        raise CacheControlError(f"Cache control for {method}() returned invalid TTL {ttl}")
    return ttl


class Interceptor:
    """
    Resolves operation calls against a cache store.

    Example:
        interceptor = Interceptor(page, store, cache_control=60)
        bundle = interceptor.resolve("render", ("home",), {}, "render(ab12...)")
    """

    def __init__(
        self,
        target: Any,
        store: CacheStore,
        cache_control: CacheControl,
        invoker: Optional[Invoker] = None,
        metrics: Optional[InterceptorMetrics] = None,
        logger: Optional[EchoLogger] = None,
    ):
        if not callable(cache_control):
            _validate_ttl(cache_control, "<default>")
        self._target = target
        self._store = store
        self._cache_control = cache_control
        self._logger = logger or get_logger("interceptor", Layer.INTERCEPTOR)
        self._invoker = invoker or Invoker(target)
        self._metrics = metrics or InterceptorMetrics()

    @property
    def metrics(self) -> InterceptorMetrics:
        return self._metrics

    def resolve(
        self,
        operation_name: str,
        arguments: Sequence[Any],
        keyword_arguments: Optional[Mapping[str, Any]],
        path: str,
    ) -> Bundle:
        """Serve ``path`` from the store, or compute it under the store's lock."""
        kwargs = dict(keyword_arguments or {})

        cached = self._store_call("get_if_fresh", path)
        if cached is not None:
            bundle = self._coerce(cached, "get_if_fresh", path)
            self._finish(Outcome.HIT, operation_name, path)
            return bundle

        if self._store_call("lock", path):
            bundle = self._catch(operation_name, arguments, kwargs)
            ttl = self.ttl_for(operation_name, arguments, kwargs, bundle)
            self._store_call("set", path, bundle, ttl)
            self._finish(Outcome.COMPUTED, operation_name, path, ttl=ttl)
            return bundle

        if self._store_call("wait", path):
            stored = self._store_call("get", path)
            if stored is None:
                raise StoreUnavailableError(
                    f"Cache store reported {path} written but has no entry",
                    operation="get",
                    path=path,
                )
            bundle = self._coerce(stored, "get", path)
            self._finish(Outcome.WAITED, operation_name, path)
            return bundle

        self._logger.warning(
            "Wait for cache writer failed, computing without cache",
            operation=operation_name,
            path=path,
        )
        bundle = self._catch(operation_name, arguments, kwargs)
        self._finish(Outcome.FALLBACK, operation_name, path)
        return bundle

    def ttl_for(
        self,
        operation_name: str,
        arguments: Sequence[Any],
        keyword_arguments: Mapping[str, Any],
        bundle: Bundle,
    ) -> float:
        """Seconds to keep ``bundle``; calls the cache control policy if it is callable."""
        if not callable(self._cache_control):
            return float(self._cache_control)
        ttl = self._cache_control(CacheControlContext(
            target=self._target,
            method=operation_name,
            arguments=tuple(arguments),
            keyword_arguments=dict(keyword_arguments),
            result=bundle,
        ))
        return _validate_ttl(ttl, operation_name)

    def _catch(
        self,
        operation_name: str,
        arguments: Sequence[Any],
        keyword_arguments: Mapping[str, Any],
    ) -> Bundle:
        try:
            return self._invoker.catch(operation_name, arguments, keyword_arguments)
        except BaseException:
            self._metrics.record_failure()
            raise

    def _store_call(self, primitive: str, path: str, *args: Any) -> Any:
        try:
            return getattr(self._store, primitive)(path, *args)
        except EchoCacheError:
            raise
        except Exception as e:
            raise StoreUnavailableError(
                f"Cache store {primitive}() failed for {path}: {e}",
                operation=primitive,
                path=path,
            ) from e

    def _coerce(self, value: Any, primitive: str, path: str) -> Bundle:
        try:
            return Bundle.coerce(value)
        except TypeError as e:
            raise StoreUnavailableError(
                f"Cache store {primitive}() returned an unusable entry for {path}",
                operation=primitive,
                path=path,
            ) from e

    def _finish(self, outcome: Outcome, operation_name: str, path: str, **context: Any) -> None:
        self._metrics.record(outcome)
        self._logger.debug(
            f"cache {outcome.value}",
            operation=operation_name,
            path=path,
            **context,
        )


__all__ = [
    "CacheControl",
    "CacheControlContext",
    "Interceptor",
    "InterceptorMetrics",
    "Outcome",
]
