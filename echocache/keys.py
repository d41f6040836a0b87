"""
Cache key derivation.

A cache path has the form ``name(digest)`` where ``digest`` is a hex hash
over the canonical serialization of the call's arguments.

Canonical serialization properties:
- keys sorted lexicographically
- no whitespace
- UTF-8 encoded
- non-JSON values are type-tagged so ``"1"``, ``1`` and ``Decimal("1")``
  never collide
- user mapping keys starting with ``__`` are escaped with one more
  underscore, so a plain dict never reads as a type tag
- NaN and Infinity rejected

Identical arguments always produce identical bytes; anything that cannot be
reduced to this form raises KeySerializationError before the target is
touched.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import math
import types
from collections import abc
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, List, Mapping, Optional, Sequence, Set

from echocache.errors import KeySerializationError

DEFAULT_DIGEST_ALGORITHM = "sha256"

_OPAQUE_TYPES = (
    types.FunctionType,
    types.BuiltinFunctionType,
    types.MethodType,
    types.ModuleType,
    type,
)


def _type_name(obj: Any) -> str:
    cls = type(obj)
    return f"{cls.__module__}.{cls.__qualname__}"


def _canonical_dumps(obj: Any) -> str:
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def _escape_key(key: str) -> str:
    # Tags are "__name__"; escaped user keys always start with "___".
    return "_" + key if key.startswith("__") else key


def _coerce(obj: Any, location: str, seen: Set[int]) -> Any:
    """Reduce ``obj`` to strict JSON types."""
    if obj is None or isinstance(obj, (str, bool, int)) and not isinstance(obj, Enum):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise KeySerializationError(f"non-finite float {obj!r}", location)
        return obj
    if isinstance(obj, Decimal):
        return {"__decimal__": str(obj)}
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {"__bytes__": bytes(obj).hex()}
    if isinstance(obj, datetime):
        return {"__datetime__": obj.isoformat()}
    if isinstance(obj, date):
        return {"__date__": obj.isoformat()}
    if isinstance(obj, time):
        return {"__time__": obj.isoformat()}
    if isinstance(obj, Enum):
        return {
            "__enum__": _type_name(obj),
            "value": _coerce(obj.value, f"{location}.value", seen),
        }

    # Local import: proxy depends on this module.
    from echocache.proxy import CachingProxy, unwrap

    if isinstance(obj, CachingProxy):
        return _coerce(unwrap(obj), location, seen)

    if isinstance(obj, _OPAQUE_TYPES):
        raise KeySerializationError(
            f"cannot derive a cache key from {_type_name(obj)}", location
        )

    marker = id(obj)
    if marker in seen:
        raise KeySerializationError("circular reference", location)
    seen.add(marker)
    try:
        return _coerce_container(obj, location, seen)
    finally:
        seen.discard(marker)


def _coerce_container(obj: Any, location: str, seen: Set[int]) -> Any:
    if isinstance(obj, list):
        return [_coerce(v, f"{location}[{i}]", seen) for i, v in enumerate(obj)]
    if isinstance(obj, tuple):
        return {
            "__tuple__": [_coerce(v, f"{location}[{i}]", seen) for i, v in enumerate(obj)]
        }
    if isinstance(obj, abc.Mapping):
        if all(isinstance(k, str) for k in obj):
            return {
                _escape_key(k): _coerce(v, f"{location}.{k}", seen)
                for k, v in obj.items()
            }
        pairs = [
            [_coerce(k, f"{location}<key>", seen), _coerce(v, f"{location}[{k!r}]", seen)]
            for k, v in obj.items()
        ]
        pairs.sort(key=lambda pair: _canonical_dumps(pair[0]))
        return {"__mapping__": pairs}
    if isinstance(obj, (set, frozenset)):
        items = [_coerce(v, f"{location}{{}}", seen) for v in obj]
        items.sort(key=_canonical_dumps)
        return {"__set__": items}
    if dataclasses.is_dataclass(obj):
        fields = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
        return {
            "__type__": _type_name(obj),
            "fields": _coerce(fields, location, seen),
        }
    state = getattr(obj, "__dict__", None)
    if isinstance(state, dict):
        return {
            "__type__": _type_name(obj),
            "state": _coerce(state, location, seen),
        }
    raise KeySerializationError(
        f"cannot derive a cache key from {_type_name(obj)}", location
    )


def canonical_arguments(
    arguments: Sequence[Any],
    keyword_arguments: Optional[Mapping[str, Any]] = None,
) -> bytes:
    """Serialize a call's arguments to canonical JSON bytes."""
    payload: List[Any] = [list(arguments)]
    if keyword_arguments:
        payload.append(dict(keyword_arguments))
    clean = _coerce(payload, "$", set())
    try:
        return _canonical_dumps(clean).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise KeySerializationError(str(e)) from e


def argument_digest(
    arguments: Sequence[Any],
    keyword_arguments: Optional[Mapping[str, Any]] = None,
    algorithm: str = DEFAULT_DIGEST_ALGORITHM,
) -> str:
    """Hex digest of the canonical argument serialization."""
    data = canonical_arguments(arguments, keyword_arguments)
    return hashlib.new(algorithm, data).hexdigest()


def derive_path(
    operation_name: str,
    arguments: Sequence[Any],
    keyword_arguments: Optional[Mapping[str, Any]] = None,
    algorithm: str = DEFAULT_DIGEST_ALGORITHM,
) -> str:
    """
    Build the cache path for one operation call.

    Example:
        derive_path("render", ("home",))  # 'render(3c1f...)'
    """
    digest = argument_digest(arguments, keyword_arguments, algorithm)
    return f"{operation_name}({digest})"


__all__ = [
    "DEFAULT_DIGEST_ALGORITHM",
    "canonical_arguments",
    "argument_digest",
    "derive_path",
]
