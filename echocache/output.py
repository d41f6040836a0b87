"""
Ambient output channel with scoped, nestable capture.

Cached operations may emit content (rendered markup, progress text, ...).
That content is part of the cached bundle, so it has to be collected while
the operation runs and replayed by the proxy afterwards. The channel is a
context variable holding the active capture buffer:

    with capture() as buffer:
        write("hello")          # lands in buffer, not on stdout
    buffer.getvalue()           # 'hello'

Captures nest. An inner capture hides its content from the outer one until
it is explicitly written again, which is exactly what a nested proxy does
when it replays its bundle. Because the sink is context-local, captures
running in different threads never see each other's output.

Plain ``print()`` only reaches the channel once StdoutRouter is installed
as ``sys.stdout`` (see install_stdout_router).
"""

from __future__ import annotations

import contextvars
import sys
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, TextIO

_sink_var: contextvars.ContextVar[Optional["CaptureBuffer"]] = contextvars.ContextVar(
    "echocache_sink", default=None
)

_router_lock = threading.Lock()


class CaptureBuffer:
    """Accumulates text written while a capture is active."""

    def __init__(self) -> None:
        self._chunks: List[str] = []

    def write(self, text: str) -> int:
        self._chunks.append(text)
        return len(text)

    def getvalue(self) -> str:
        return "".join(self._chunks)

    def __len__(self) -> int:
        return sum(len(c) for c in self._chunks)


def _ambient_stream() -> TextIO:
    stream = sys.stdout
    if isinstance(stream, StdoutRouter):
        return stream.wrapped
    return stream


def write(text: str) -> None:
    """Write to the innermost active capture, or to stdout when none is active."""
    if not text:
        return
    sink = _sink_var.get()
    if sink is not None:
        sink.write(text)
        return
    _ambient_stream().write(text)


def capturing() -> bool:
    """True while a capture is active in the current context."""
    return _sink_var.get() is not None


@contextmanager
def capture() -> Iterator[CaptureBuffer]:
    """Collect everything written to the channel inside the block."""
    buffer = CaptureBuffer()
    token = _sink_var.set(buffer)
    try:
        yield buffer
    finally:
        _sink_var.reset(token)


class StdoutRouter:
    """
    ``sys.stdout`` stand-in that sends writes to the active capture.

    Outside a capture it behaves like the stream it wraps.
    """

    def __init__(self, wrapped: TextIO):
        self.wrapped = wrapped

    def write(self, text: str) -> int:
        sink = _sink_var.get()
        if sink is not None:
            return sink.write(text)
        return self.wrapped.write(text)

    def writelines(self, lines: Any) -> None:
        for line in lines:
            self.write(line)

    def flush(self) -> None:
        if _sink_var.get() is None:
            self.wrapped.flush()

    def writable(self) -> bool:
        return True

    def __getattr__(self, name: str) -> Any:
        return getattr(self.wrapped, name)


def install_stdout_router() -> StdoutRouter:
    """Route ``sys.stdout`` through the channel. Idempotent."""
    with _router_lock:
        if not isinstance(sys.stdout, StdoutRouter):
            sys.stdout = StdoutRouter(sys.stdout)  # type: ignore
        return sys.stdout


def uninstall_stdout_router() -> None:
    """Restore the stream that install_stdout_router replaced."""
    with _router_lock:
        if isinstance(sys.stdout, StdoutRouter):
            sys.stdout = sys.stdout.wrapped


__all__ = [
    "CaptureBuffer",
    "StdoutRouter",
    "capture",
    "capturing",
    "install_stdout_router",
    "uninstall_stdout_router",
    "write",
]
