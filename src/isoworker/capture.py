"""Output interception for the worker process.

Replaces ``sys.stdout`` and ``sys.stderr`` with line-buffered text streams
whose raw layer forwards every chunk to the supervisor channel. The streams
behave like the interpreter's own: ``write()`` returns the number of
characters written, ``flush()`` pushes buffered data, and binary writes
through ``.buffer`` are supported. Bytes are decoded incrementally as UTF-8,
so a multi-byte character split across two writes is never mangled.
"""

from __future__ import annotations

import codecs
from collections.abc import Iterator
import contextlib
import io
import logging
import sys

from isoworker.channel import WorkerChannel
from isoworker.models import MessageType

logger = logging.getLogger(__name__)

MAX_FRAGMENT_CHARS = 256 * 1024


class ChannelRawStream(io.RawIOBase):
    """Raw binary stream that relays each write as one or more output messages.

    Args:
        kind: ``MessageType.STDOUT`` or ``MessageType.STDERR``.
        channel: Channel receiving the decoded fragments.
    """

    def __init__(self, kind: MessageType, channel: WorkerChannel) -> None:
        super().__init__()
        self._kind = kind
        self._channel = channel
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def kind(self) -> MessageType:
        return self._kind

    def writable(self) -> bool:
        return True

    def isatty(self) -> bool:
        return False

    def write(self, b) -> int:  # type: ignore[override]
        data = bytes(b)
        self._emit(self._decoder.decode(data))
        return len(data)

    def _emit(self, text: str) -> None:
        # Bounded fragments keep every channel line well under the reader's limit.
        for start in range(0, len(text), MAX_FRAGMENT_CHARS):
            self._channel.output(self._kind, text[start : start + MAX_FRAGMENT_CHARS])

    def close(self) -> None:
        if not self.closed:
            self._emit(self._decoder.decode(b"", final=True))
        super().close()


def open_channel_stream(kind: MessageType, channel: WorkerChannel) -> io.TextIOWrapper:
    """Build a text stream suitable for ``sys.stdout`` / ``sys.stderr``.

    Args:
        kind: Which standard stream the result stands in for.
        channel: Channel receiving the output.

    Returns:
        A line-buffered UTF-8 ``TextIOWrapper`` over a ``ChannelRawStream``.
    """
    raw = ChannelRawStream(kind, channel)
    errors = "backslashreplace" if kind == MessageType.STDERR else "strict"
    return io.TextIOWrapper(
        io.BufferedWriter(raw),
        encoding="utf-8",
        errors=errors,
        line_buffering=True,
    )


def _flusher(stream: io.TextIOWrapper):
    def flush() -> None:
        # The target may have closed the stream itself.
        if not stream.closed:
            stream.flush()

    return flush


@contextlib.contextmanager
def redirect_output(channel: WorkerChannel) -> Iterator[tuple[io.TextIOWrapper, io.TextIOWrapper]]:
    """Send everything written to ``sys.stdout``/``sys.stderr`` to *channel*.

    The original streams are restored on exit and the replacement streams
    are flushed and closed, so nothing written during the block leaks to
    the real descriptors afterwards. The channel flushes both streams
    before it emits its completion message.

    Yields:
        The ``(stdout, stderr)`` replacement streams.
    """
    stdout = open_channel_stream(MessageType.STDOUT, channel)
    stderr = open_channel_stream(MessageType.STDERR, channel)
    hooks = [_flusher(stdout), _flusher(stderr)]
    for hook in hooks:
        channel.add_flush_hook(hook)

    saved = (sys.stdout, sys.stderr)
    sys.stdout, sys.stderr = stdout, stderr
    try:
        yield stdout, stderr
    finally:
        sys.stdout, sys.stderr = saved
        for hook in hooks:
            channel.remove_flush_hook(hook)
        for stream in (stdout, stderr):
            try:
                stream.close()
            except ValueError:
                logger.debug("Captured %s stream was already detached", stream)
