"""
echocache: transparent caching proxies with output replay.

Wrap any object so its operations are memoized in an external cache store,
keyed by operation name and argument content, with TTL expiry and
single-flight protection against concurrent recomputation. Whatever an
operation prints is captured with its return value and replayed verbatim on
every later call.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          CACHING PROXY                                   │
    │                                                                          │
    │  proxy.py        Attribute interception, child proxies per namespace    │
    │  interceptor.py  Check / lock / compute / wait / fallback state machine │
    │  invoker.py      Call-through with scoped output capture                │
    │                                                                          │
    │  keys.py         Canonical argument serialization and digests           │
    │  output.py       Context-local output channel, stdout routing           │
    │  store.py        CacheStore protocol and Bundle                         │
    │                                                                          │
    │  config.py       YAML/env configuration                                  │
    │  observability.py Structured logging                                    │
    │  errors.py       Exception hierarchy                                     │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Usage
─────

    from echocache import cached

    page = cached(Page(), store, cache_control=60)
    page.render("home")
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy import echocache modules on first access."""

    if name in ("CachingProxy", "cached", "invoke", "read", "unwrap", "metrics",
                "is_object_typed"):
        from echocache import proxy
        return getattr(proxy, name)

    if name in ("Interceptor", "InterceptorMetrics", "CacheControl",
                "CacheControlContext", "Outcome"):
        from echocache import interceptor
        return getattr(interceptor, name)

    if name in ("Invoker",):
        from echocache import invoker
        return getattr(invoker, name)

    if name in ("Bundle", "CacheStore"):
        from echocache import store
        return getattr(store, name)

    if name in ("derive_path", "argument_digest", "canonical_arguments"):
        from echocache import keys
        return getattr(keys, name)

    if name in ("EchoCacheError", "KeySerializationError", "StoreUnavailableError",
                "CacheControlError"):
        from echocache import errors
        return getattr(errors, name)

    if name in ("ConfigError", "ConfigValidationError", "get_config",
                "get_config_manager"):
        from echocache import config
        return getattr(config, name)

    raise AttributeError(f"module 'echocache' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Proxy
    "CachingProxy",
    "cached",
    "invoke",
    "read",
    "unwrap",
    "metrics",
    "is_object_typed",
    # Interceptor
    "Interceptor",
    "InterceptorMetrics",
    "CacheControl",
    "CacheControlContext",
    "Outcome",
    "Invoker",
    # Store contract
    "Bundle",
    "CacheStore",
    # Keys
    "derive_path",
    "argument_digest",
    "canonical_arguments",
    # Errors
    "EchoCacheError",
    "KeySerializationError",
    "StoreUnavailableError",
    "CacheControlError",
    # Config
    "ConfigError",
    "ConfigValidationError",
    "get_config",
    "get_config_manager",
]
