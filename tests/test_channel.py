"""Tests for the worker-side supervisor channel.

Validates message ordering, the single-fire completion guard under racing
callers, flush hooks, and the pipe-backed ``FdSink``.
"""

from __future__ import annotations

import os
import threading

from hypothesis import given, settings, strategies as st
from isoworker.channel import ChannelClosedError, FdSink, WorkerChannel
from isoworker.models import (
    CompletionMessage,
    FailureDetail,
    MessageType,
    OutputMessage,
    parse_message,
)
import pytest

from tests.conftest import RecordingSink

# ===========================================================================
# WorkerChannel
# ===========================================================================


@pytest.mark.unit
class TestWorkerChannelOrdering:
    """Messages reach the sink in emission order."""

    def test_outputs_in_order(self, channel: WorkerChannel, sink: RecordingSink) -> None:
        """Two writes to the same stream arrive in order."""
        channel.output(MessageType.STDOUT, "A")
        channel.output(MessageType.STDERR, "x")
        channel.output(MessageType.STDOUT, "B")
        assert [m.data for m in sink.of_type("stdout")] == ["A", "B"]

    def test_empty_output_not_sent(self, channel: WorkerChannel, sink: RecordingSink) -> None:
        """Empty fragments are not emitted."""
        channel.output(MessageType.STDOUT, "")
        assert sink.messages == []

    def test_multiple_failures_allowed(self, channel: WorkerChannel, sink: RecordingSink) -> None:
        """Any number of failures may precede the completion."""
        channel.failure(FailureDetail(message="one"))
        channel.failure(FailureDetail(message="two"))
        channel.complete(1)
        assert [m.data.message for m in sink.of_type("error")] == ["one", "two"]
        assert sink.messages[-1] == CompletionMessage(code=1)


@pytest.mark.unit
class TestCompletionGuard:
    """Exactly one completion is ever emitted."""

    def test_first_completion_wins(self, channel: WorkerChannel, sink: RecordingSink) -> None:
        """A later completion call is ignored."""
        assert channel.complete(0) is True
        assert channel.complete(1) is False
        assert sink.of_type("exit") == [CompletionMessage(code=0)]
        assert channel.exit_code == 0

    def test_nothing_after_completion(self, channel: WorkerChannel, sink: RecordingSink) -> None:
        """Output and failures after completion are dropped."""
        channel.complete(1)
        channel.output(MessageType.STDOUT, "late")
        channel.failure(FailureDetail(message="late"))
        assert sink.messages == [CompletionMessage(code=1)]

    def test_completed_property(self, channel: WorkerChannel) -> None:
        """completed flips once the completion is sent."""
        assert channel.completed is False
        assert channel.exit_code is None
        channel.complete(3)
        assert channel.completed is True
        assert channel.exit_code == 3

    def test_racing_threads_emit_one_completion(self, sink: RecordingSink) -> None:
        """Concurrent completion requests from many threads emit exactly one."""
        channel = WorkerChannel(sink)
        barrier = threading.Barrier(16)
        winners: list[bool] = []

        def _complete(code: int) -> None:
            barrier.wait()
            winners.append(channel.complete(code))

        threads = [threading.Thread(target=_complete, args=(i % 2,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert winners.count(True) == 1
        assert len(sink.of_type("exit")) == 1

    @given(codes=st.lists(st.integers(min_value=-5, max_value=5), min_size=1, max_size=10))
    @settings(max_examples=50)
    def test_exit_code_is_first_requested(self, codes: list[int]) -> None:
        """Property: the emitted status is the first one requested."""
        sink = RecordingSink()
        channel = WorkerChannel(sink)
        for code in codes:
            channel.complete(code)
        assert sink.messages == [CompletionMessage(code=codes[0])]


@pytest.mark.unit
class TestFlushHooks:
    """Flush hooks run before the completion is emitted."""

    def test_hook_output_precedes_completion(
        self, channel: WorkerChannel, sink: RecordingSink
    ) -> None:
        """Output emitted by a flush hook lands before the exit message."""
        channel.add_flush_hook(lambda: channel.output(MessageType.STDOUT, "buffered"))
        channel.complete(0)
        assert sink.messages == [
            OutputMessage(type=MessageType.STDOUT, data="buffered"),
            CompletionMessage(code=0),
        ]

    def test_removed_hook_not_run(self, channel: WorkerChannel, sink: RecordingSink) -> None:
        """A removed hook is not called."""

        def hook() -> None:
            channel.output(MessageType.STDOUT, "nope")

        channel.add_flush_hook(hook)
        channel.remove_flush_hook(hook)
        channel.complete(0)
        assert sink.messages == [CompletionMessage(code=0)]


class _BrokenSink:
    def __init__(self) -> None:
        self.calls = 0

    def send(self, message: object) -> None:
        self.calls += 1
        msg = "gone"
        raise ChannelClosedError(msg)


@pytest.mark.unit
class TestBrokenSink:
    """A closed supervisor end never crashes the worker."""

    def test_closed_sink_is_contained(self) -> None:
        """The first failure marks the sink broken; later sends are skipped."""
        broken = _BrokenSink()
        channel = WorkerChannel(broken)
        channel.output(MessageType.STDOUT, "a")
        channel.output(MessageType.STDOUT, "b")
        assert broken.calls == 1

    def test_completion_still_recorded(self) -> None:
        """The guard still records the completion status."""
        channel = WorkerChannel(_BrokenSink())
        assert channel.complete(1) is True
        assert channel.exit_code == 1


# ===========================================================================
# FdSink
# ===========================================================================


@pytest.mark.unit
class TestFdSink:
    """FdSink writes JSON lines to a file descriptor."""

    def test_writes_json_lines(self) -> None:
        """Each message is one parseable line on the pipe."""
        read_fd, write_fd = os.pipe()
        sink = FdSink(write_fd)
        sink.send(OutputMessage(type=MessageType.STDOUT, data="hi\n"))
        sink.send(CompletionMessage(code=0))
        sink.close()
        with os.fdopen(read_fd, "rb") as reader:
            lines = reader.read().splitlines()
        assert [parse_message(line) for line in lines] == [
            OutputMessage(type=MessageType.STDOUT, data="hi\n"),
            CompletionMessage(code=0),
        ]

    def test_send_after_close_raises(self) -> None:
        """Sending on a closed sink raises ChannelClosedError."""
        read_fd, write_fd = os.pipe()
        sink = FdSink(write_fd)
        sink.close()
        os.close(read_fd)
        with pytest.raises(ChannelClosedError):
            sink.send(CompletionMessage(code=0))

    def test_reader_gone_raises(self) -> None:
        """A vanished reader surfaces as ChannelClosedError."""
        read_fd, write_fd = os.pipe()
        os.close(read_fd)
        sink = FdSink(write_fd)
        try:
            with pytest.raises(ChannelClosedError):
                sink.send(CompletionMessage(code=0))
        finally:
            sink.close()

    def test_close_is_idempotent(self) -> None:
        """Closing twice does not raise."""
        read_fd, write_fd = os.pipe()
        sink = FdSink(write_fd)
        sink.close()
        sink.close()
        os.close(read_fd)
