"""Worker side of the supervisor channel.

``WorkerChannel`` is the only way the worker talks to its supervisor. It
serializes messages from every thread through one re-entrant lock, so the
supervisor sees them in emission order, and it owns the single-fire
completion guard: the first ``complete()`` call emits the one
``CompletionMessage`` of the worker's lifetime, every later call is a no-op,
and nothing is emitted after it.

``FdSink`` writes the messages as JSON lines to a pipe file descriptor
inherited from the supervisor.
"""

from __future__ import annotations

from collections.abc import Callable
import logging
import os
import threading
from typing import Protocol

from isoworker.models import (
    CompletionMessage,
    FailureDetail,
    FailureMessage,
    MessageType,
    OutputMessage,
    encode_message,
)

logger = logging.getLogger(__name__)


class ChannelClosedError(Exception):
    """The supervisor end of the channel is gone or the sink was closed."""


class MessageSink(Protocol):
    """Destination for encoded supervisor messages."""

    def send(self, message: OutputMessage | FailureMessage | CompletionMessage) -> None:
        """Deliver one message, blocking as long as the transport does."""
        ...


class FdSink:
    """Writes JSON-line messages to a file descriptor.

    Writes are unbuffered and loop until the whole line is written, so
    backpressure from a full pipe blocks the writer exactly as long as the
    pipe does.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._closed = False
        self._fd_open = True

    def send(self, message: OutputMessage | FailureMessage | CompletionMessage) -> None:
        """Write one message line.

        Raises:
            ChannelClosedError: If the sink is closed or the reader went away.
        """
        if self._closed:
            msg = "channel sink is closed"
            raise ChannelClosedError(msg)
        view = memoryview(encode_message(message))
        try:
            while view:
                written = os.write(self._fd, view)
                view = view[written:]
        except OSError as exc:
            self._closed = True
            msg = f"channel write failed: {exc}"
            raise ChannelClosedError(msg) from exc

    def close(self) -> None:
        """Close the underlying descriptor. Idempotent."""
        self._closed = True
        if not self._fd_open:
            return
        self._fd_open = False
        try:
            os.close(self._fd)
        except OSError:
            logger.debug("Channel fd %d already closed", self._fd)


class WorkerChannel:
    """Ordered, thread-safe message emitter with a single-fire completion.

    Args:
        sink: Transport that receives the messages.
    """

    def __init__(self, sink: MessageSink) -> None:
        self._sink = sink
        self._lock = threading.RLock()
        self._exit_code: int | None = None
        self._sink_broken = False
        self._flush_hooks: list[Callable[[], None]] = []

    @property
    def completed(self) -> bool:
        """Whether the completion message has been emitted."""
        return self._exit_code is not None

    @property
    def exit_code(self) -> int | None:
        """Status carried by the completion message, once sent."""
        return self._exit_code

    def add_flush_hook(self, hook: Callable[[], None]) -> None:
        """Register a callable run just before the completion is emitted.

        Used by the output capture layer so that buffered output always
        precedes the completion message.
        """
        with self._lock:
            self._flush_hooks.append(hook)

    def remove_flush_hook(self, hook: Callable[[], None]) -> None:
        """Unregister a hook added with ``add_flush_hook``."""
        with self._lock:
            if hook in self._flush_hooks:
                self._flush_hooks.remove(hook)

    def output(self, kind: MessageType, data: str) -> None:
        """Emit a stdout or stderr fragment."""
        if not data:
            return
        self._send(OutputMessage(type=kind, data=data))

    def failure(self, detail: FailureDetail) -> None:
        """Emit a failure report. Any number may be sent before completion."""
        self._send(FailureMessage(data=detail))

    def complete(self, code: int) -> bool:
        """Emit the completion message if no completion has been emitted yet.

        Args:
            code: Status code, 0 for success.

        Returns:
            ``True`` if this call emitted the completion, ``False`` if an
            earlier call already had.
        """
        if self._exit_code is not None:
            return False
        # Hooks run outside the lock: they take the stream locks, which a
        # writer in another thread may hold while waiting for this lock.
        for hook in list(self._flush_hooks):
            hook()
        with self._lock:
            if self._exit_code is not None:
                return False
            self._send(CompletionMessage(code=code))
            self._exit_code = code
            return True

    def _send(self, message: OutputMessage | FailureMessage | CompletionMessage) -> None:
        with self._lock:
            if self._exit_code is not None:
                logger.debug("Dropping %s message emitted after completion", message.type)
                return
            if self._sink_broken:
                return
            try:
                self._sink.send(message)
            except ChannelClosedError:
                self._sink_broken = True
                logger.warning("Supervisor channel closed; further messages are dropped")
