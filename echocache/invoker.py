"""
Call-through to the wrapped target with output capture.

The invoker is the only place that touches the real target. It runs the
operation inside a capture scope and hands back a Bundle, so from the
caller's perspective the call has no visible output until the proxy
replays it.
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Optional, Sequence

from echocache import output
from echocache.observability import EchoLogger, Layer, get_logger
from echocache.store import Bundle


class Invoker:
    """Invokes operations on one target and captures what they emit."""

    def __init__(self, target: Any, logger: Optional[EchoLogger] = None):
        self._target = target
        self._logger = logger or get_logger("invoker", Layer.INVOKER)

    @property
    def target(self) -> Any:
        return self._target

    def catch(
        self,
        operation_name: str,
        arguments: Sequence[Any],
        keyword_arguments: Optional[Mapping[str, Any]] = None,
    ) -> Bundle:
        """
        Call ``target.<operation_name>(*arguments, **keyword_arguments)``.

        Output emitted during the call, including replays from nested
        proxies, is collected into the returned bundle. If the operation
        raises, whatever it emitted so far is written to the enclosing
        channel and the exception propagates unchanged.
        """
        method = getattr(self._target, operation_name)
        start = time.monotonic()
        buffer: Optional[output.CaptureBuffer] = None
        try:
            with output.capture() as buffer:
                result = method(*arguments, **(keyword_arguments or {}))
        except BaseException:
            self._logger.operation(
                operation_name,
                (time.monotonic() - start) * 1000,
                success=False,
            )
            if buffer is not None:
                output.write(buffer.getvalue())
            raise

        self._logger.operation(
            operation_name,
            (time.monotonic() - start) * 1000,
            output_chars=len(buffer),
        )
        return Bundle(output=buffer.getvalue(), result=result)


__all__ = ["Invoker"]
