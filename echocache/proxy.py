"""
Transparent caching proxy.

A CachingProxy stands in for a target object. Calling one of the target's
operations through the proxy is memoized in the cache store together with
everything the operation printed; reading a field goes straight to the
target. Whenever an operation or field yields another object, that object
is wrapped as well, scoped to a child namespace of the store, so a whole
chain ``site.page("home").render()`` is cached at every level.

Usage
─────

    from echocache import cached

    site = cached(Site(), store, cache_control=300)
    site.page("home").render()      # computed, output printed
    site.page("home").render()      # replayed from the store

The proxy keeps its own surface out of the target's attribute namespace;
use the module functions invoke(), read(), unwrap() and metrics() to reach
it explicitly.
"""

from __future__ import annotations

import inspect
import numbers
import types
from dataclasses import dataclass
from datetime import date, time, timedelta
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from echocache import output
from echocache.config import get_config
from echocache.errors import EchoCacheError, StoreUnavailableError
from echocache.interceptor import CacheControl, Interceptor, InterceptorMetrics
from echocache.keys import derive_path
from echocache.observability import Layer, correlation_scope, get_logger
from echocache.store import CacheStore

OperationFilter = Callable[[Any, str], bool]

_PLAIN_TYPES = (
    type(None),
    bool,
    numbers.Number,
    str,
    bytes,
    bytearray,
    memoryview,
    date,
    time,
    timedelta,
    list,
    tuple,
    dict,
    set,
    frozenset,
    range,
    Enum,
)

_OPAQUE_TYPES = (
    types.FunctionType,
    types.BuiltinFunctionType,
    types.MethodType,
    types.ModuleType,
    type,
)

logger = get_logger("proxy", Layer.PROXY)


def is_object_typed(value: Any) -> bool:
    """True for values that get wrapped in a child proxy."""
    return not isinstance(value, _PLAIN_TYPES + _OPAQUE_TYPES + (CachingProxy,))


@dataclass(frozen=True)
class _ProxySettings:
    """Shared by a root proxy and every proxy spawned from it."""
    digest_algorithm: str
    operation_filter: Optional[OperationFilter]
    metrics: InterceptorMetrics


class _CachedOperation:
    """Bound operation of a proxied target."""

    def __init__(self, proxy: "CachingProxy", name: str):
        self._proxy = proxy
        self.__name__ = name

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._proxy._echo_invoke(self.__name__, args, kwargs)

    def __repr__(self) -> str:
        return f"<cached operation {self.__name__} of {self._proxy!r}>"


def _descend(store: CacheStore, segment: str) -> CacheStore:
    try:
        return store.descend(segment)
    except EchoCacheError:
        raise
    except Exception as e:
        raise StoreUnavailableError(
            f"Cache store descend() failed for {segment}: {e}",
            operation="descend",
            path=segment,
        ) from e


class CachingProxy:
    """
    Caching façade over one target and one store scope.

    Immutable after construction: target, store scope and cache control
    are fixed for the proxy's lifetime.
    """

    __slots__ = (
        "_echo_target",
        "_echo_store",
        "_echo_cache_control",
        "_echo_settings",
        "_echo_interceptor",
    )

    def __init__(
        self,
        target: Any,
        store: CacheStore,
        cache_control: CacheControl,
        settings: _ProxySettings,
    ):
        set_slot = object.__setattr__
        set_slot(self, "_echo_target", target)
        set_slot(self, "_echo_store", store)
        set_slot(self, "_echo_cache_control", cache_control)
        set_slot(self, "_echo_settings", settings)
        set_slot(self, "_echo_interceptor", Interceptor(
            target,
            store,
            cache_control,
            metrics=settings.metrics,
        ))

    def _echo_spawn(self, target: Any, store: CacheStore) -> "CachingProxy":
        return CachingProxy(target, store, self._echo_cache_control, self._echo_settings)

    def _echo_wrap(self, value: Any, segment: str) -> Any:
        if is_object_typed(value):
            return self._echo_spawn(value, _descend(self._echo_store, segment))
        return value

    def _echo_invoke(
        self,
        operation_name: str,
        arguments: Sequence[Any],
        keyword_arguments: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        path = derive_path(
            operation_name,
            arguments,
            keyword_arguments,
            self._echo_settings.digest_algorithm,
        )
        with correlation_scope():
            bundle = self._echo_interceptor.resolve(
                operation_name, arguments, keyword_arguments, path
            )
            output.write(bundle.output)
            return self._echo_wrap(bundle.result, path)

    def _echo_is_operation(self, name: str) -> bool:
        operation_filter = self._echo_settings.operation_filter
        return operation_filter is None or operation_filter(self._echo_target, name)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_echo_") or (name.startswith("__") and name.endswith("__")):
            raise AttributeError(name)
        value = getattr(self._echo_target, name)
        # Callable objects are fields like any other object.
        if inspect.isroutine(value):
            if self._echo_is_operation(name):
                return _CachedOperation(self, name)
            return value
        return self._echo_wrap(value, name)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is read-only; cannot set {name!r}")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"{type(self).__name__} is read-only; cannot delete {name!r}")

    def __dir__(self) -> list:
        return dir(self._echo_target)

    def __repr__(self) -> str:
        return f"<CachingProxy for {self._echo_target!r}>"


def cached(
    target: Any,
    store: CacheStore,
    cache_control: Optional[CacheControl] = None,
    *,
    operations: Optional[Any] = None,
    digest_algorithm: Optional[str] = None,
    route_stdout: Optional[bool] = None,
) -> CachingProxy:
    """
    Wrap ``target`` in a caching proxy backed by ``store``.

    Args:
        target: Object whose operations should be cached.
        store: Cache store implementing the CacheStore primitives.
        cache_control: TTL in seconds, or a callable receiving a
            CacheControlContext and returning seconds. Defaults to
            ``cache.default_ttl_seconds`` from the configuration.
        operations: Names of the operations to cache, or a callable
            ``(target, name) -> bool``. Other methods pass through
            uncached. Default: every method of the target.
        digest_algorithm: hashlib algorithm for argument digests.
        route_stdout: Route ``sys.stdout`` through the capture channel so
            plain ``print()`` inside operations is cached.
    """
    if isinstance(target, CachingProxy):
        raise TypeError("target is already a CachingProxy")
    if not isinstance(store, CacheStore):
        raise TypeError(f"{type(store).__name__} does not implement the CacheStore primitives")

    cache_config = get_config().cache
    if cache_control is None:
        cache_control = cache_config.default_ttl_seconds.get()
    if route_stdout is None:
        route_stdout = cache_config.route_stdout.get()
    if route_stdout:
        output.install_stdout_router()

    operation_filter: Optional[OperationFilter]
    if operations is None or callable(operations):
        operation_filter = operations
    else:
        names = frozenset(operations)
        operation_filter = lambda _target, name: name in names  # noqa: E731

    settings = _ProxySettings(
        digest_algorithm=digest_algorithm or cache_config.digest_algorithm.get(),
        operation_filter=operation_filter,
        metrics=InterceptorMetrics(),
    )
    logger.debug(
        "caching proxy created",
        target=type(target).__name__,
        digest_algorithm=settings.digest_algorithm,
    )
    return CachingProxy(target, store, cache_control, settings)


def invoke(proxy: CachingProxy, operation_name: str, *args: Any, **kwargs: Any) -> Any:
    """Call ``operation_name`` through the proxy's cache."""
    return proxy._echo_invoke(operation_name, args, kwargs)


def read(proxy: CachingProxy, field_name: str) -> Any:
    """Read a field of the proxied target, wrapping object values."""
    value = getattr(proxy._echo_target, field_name)
    return proxy._echo_wrap(value, field_name)


def unwrap(proxy: Any) -> Any:
    """The target behind ``proxy``; non-proxies are returned as-is."""
    if isinstance(proxy, CachingProxy):
        return proxy._echo_target
    return proxy


def metrics(proxy: CachingProxy) -> InterceptorMetrics:
    """Resolution counters shared by ``proxy`` and its whole proxy tree."""
    return proxy._echo_settings.metrics


__all__ = [
    "CachingProxy",
    "OperationFilter",
    "cached",
    "invoke",
    "is_object_typed",
    "metrics",
    "read",
    "unwrap",
]
