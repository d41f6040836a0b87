"""
echocache Observability

Structured logging for the proxy, interceptor and invoker, with correlation
IDs propagated through context variables.

    ┌─────────────────────────────────────────────────────────┐
    │        CachingProxy / Interceptor / Invoker             │
    │  logger.debug("cache hit", operation="render", path=p)  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      EchoLogger                         │
    │     layer, correlation ID, structured context           │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │            StructuredHandler (json | text)              │
    └─────────────────────────────────────────────────────────┘

Log records go to stderr, never to the output channel that operations are
captured from.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "echocache_correlation_id", default=""
)


class Layer(Enum):
    """echocache components for categorization."""
    PROXY = "proxy"
    INTERCEPTOR = "interceptor"
    INVOKER = "invoker"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        """Single human-readable line."""
        parts = [self.timestamp, self.level.upper(), self.logger, self.message]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.duration_ms is not None:
            parts.append(f"duration_ms={self.duration_ms:.2f}")
        parts.extend(f"{k}={v}" for k, v in sorted(self.context.items()))
        line = " ".join(parts)
        if self.exception:
            line = f"{line}\n{self.exception}"
        return line


class StructuredHandler(logging.Handler):
    """
    Logging handler that outputs one structured event per line.

    Without an explicit ``fmt`` the format follows
    ``observability.log_format`` at emit time.
    """

    def __init__(self, stream: Any = None, fmt: Optional[str] = None):
        super().__init__()
        self.stream = stream
        self.fmt = fmt

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            fmt = self.fmt or _observability_config().log_format.get()
            line = event.to_text() if fmt == "text" else event.to_json()
            stream = self.stream or sys.stderr
            stream.write(line + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


def _observability_config() -> Any:
    # Late import: config must stay importable without logging set up.
    from echocache.config import get_config

    return get_config().observability


class EchoLogger:
    """
    Structured logger for echocache components.

    Every event carries the component layer and the current correlation ID.
    Level and format follow the observability config unless given here.
    """

    def __init__(
        self,
        name: str,
        layer: Layer,
        level: Optional[str] = None,
        fmt: Optional[str] = None,
    ):
        self.name = name
        self.layer = layer
        self._level = level
        self._logger = logging.getLogger(f"echocache.{layer.value}.{name}")
        self._sync_level()

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler(fmt=fmt))

    def _sync_level(self) -> None:
        level = self._level or _observability_config().log_level.get()
        threshold = getattr(logging, level.upper())
        if self._logger.level != threshold:
            self._logger.setLevel(threshold)

    @property
    def logger(self) -> logging.Logger:
        """Underlying stdlib logger."""
        self._sync_level()
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._sync_level()
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        """Log debug message."""
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        """Log info message."""
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        """Log warning message."""
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, exc_info: bool = False, **context: Any) -> None:
        """Log error message."""
        self._log(logging.ERROR, message, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Run the block under a correlation ID.

    An ID already bound in the context is kept, so nested proxy calls log
    under the ID of the outermost call.
    """
    current = correlation_id_var.get()
    if current and correlation_id is None:
        yield current
        return
    token = set_correlation_id(correlation_id or generate_correlation_id())
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


_loggers: Dict[Tuple[str, Layer], EchoLogger] = {}
_loggers_lock = threading.Lock()


def get_logger(name: str, layer: Layer) -> EchoLogger:
    """Get the shared logger for an echocache component."""
    with _loggers_lock:
        key = (name, layer)
        if key not in _loggers:
            _loggers[key] = EchoLogger(name, layer)
        return _loggers[key]

