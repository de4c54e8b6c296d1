"""Fault description and scoped fault interception.

``describe_exception`` turns any exception into a serializable
``FailureDetail``. ``FaultInterceptor`` installs the two escape-hatch hooks a
worker needs while it runs the target file:

- ``threading.excepthook``, for exceptions escaping threads started by the
  target;
- the running asyncio loop's exception handler, for task exceptions nobody
  retrieved (the asyncio equivalent of an unhandled rejection).

Both hooks are restored when the interceptor exits, so a worker run never
changes how faults are handled outside of it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
import threading
import traceback
from typing import Any

from isoworker.models import FailureDetail, FaultKind, TraceFrame

logger = logging.getLogger(__name__)

UNHANDLED_ASYNC_DESCRIPTION = "Unhandled asynchronous error"

FaultCallback = Callable[[FailureDetail], None]


def _qualified_name(exc: BaseException) -> str:
    cls = type(exc)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def describe_exception(
    exc: BaseException,
    kind: FaultKind,
    default_message: str | None = None,
) -> FailureDetail:
    """Build a ``FailureDetail`` from an exception.

    The message is ``str(exc)``; when that is empty, *default_message* is
    used, falling back to the exception's class name.

    Args:
        exc: The exception to describe.
        kind: Origin of the fault.
        default_message: Description used when the exception has no message.

    Returns:
        A detail carrying the message, the formatted traceback and its frames.
    """
    message = str(exc) or default_message or type(exc).__name__
    stack = "".join(traceback.format_exception(exc))
    frames = tuple(
        TraceFrame(filename=frame.filename, lineno=frame.lineno, name=frame.name)
        for frame in traceback.extract_tb(exc.__traceback__)
    )
    return FailureDetail(
        message=message,
        stack=stack,
        kind=kind,
        error_type=_qualified_name(exc),
        frames=frames,
    )


class FaultInterceptor:
    """Context manager routing escaped faults to a callback.

    Must be entered from a coroutine running on the loop whose exception
    handler should be intercepted.

    Args:
        on_fault: Called with the fault's description. May be called from a
            thread other than the loop's.
    """

    def __init__(self, on_fault: FaultCallback) -> None:
        self._on_fault = on_fault
        self._loop: asyncio.AbstractEventLoop | None = None
        self._saved_loop_handler: Any = None
        self._saved_thread_hook: Any = None

    def __enter__(self) -> FaultInterceptor:
        self._loop = asyncio.get_running_loop()
        self._saved_loop_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._handle_loop_exception)
        self._saved_thread_hook = threading.excepthook
        threading.excepthook = self._handle_thread_exception
        return self

    def __exit__(self, *exc_info: object) -> None:
        threading.excepthook = self._saved_thread_hook
        if self._loop is not None:
            self._loop.set_exception_handler(self._saved_loop_handler)
        self._loop = None

    def _handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_type is SystemExit:
            # Matches the interpreter's default hook, which ignores it.
            return
        exc = args.exc_value
        if exc is None:
            exc = args.exc_type()
        thread_name = args.thread.name if args.thread is not None else "unknown"
        logger.debug("Uncaught %s in thread %s", args.exc_type.__name__, thread_name)
        self._on_fault(describe_exception(exc, FaultKind.UNCAUGHT))

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        exc = context.get("exception")
        if exc is None:
            logger.warning("asyncio: %s", context.get("message", "unknown event"))
            return
        self._on_fault(
            describe_exception(
                exc, FaultKind.UNHANDLED_ASYNC, default_message=UNHANDLED_ASYNC_DESCRIPTION
            )
        )
