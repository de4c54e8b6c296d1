"""Supervisor side of the worker channel protocol.

Spawns ``python -m isoworker.worker`` in its own process group, hands it the
work descriptor on stdin, and turns everything the worker produces into one
ordered stream of messages:

- JSON-line messages from the dedicated channel pipe;
- raw bytes the worker process wrote straight to fd 1 / fd 2 (C extensions,
  grandchild processes), relayed as output messages.

The stream upholds the protocol the orchestrator relies on: the completion
message is the last message and appears exactly once. A worker that exits or
closes its channel without completing gets a synthesized failure and
completion; a worker that outlives ``timeout_seconds`` is killed (SIGTERM,
then SIGKILL) and completes with ``TIMEOUT_STATUS``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import codecs
import contextlib
import logging
import os
from pathlib import Path
import signal
import sysconfig
import time
from typing import Any, Literal

from pydantic import ValidationError

from isoworker.models import (
    CompletionMessage,
    FailureDetail,
    FailureMessage,
    FaultKind,
    MessageType,
    OutputMessage,
    WorkDescriptor,
    WorkerConfig,
    WorkerOutcome,
    parse_message,
)

logger = logging.getLogger(__name__)

TIMEOUT_STATUS = -1

_CHANNEL_LINE_LIMIT = 16 * 1024 * 1024
_READ_CHUNK = 64 * 1024
_WORKER_MODULE = "isoworker.worker"

Message = OutputMessage | FailureMessage | CompletionMessage
_Source = Literal["channel", "stream"]


class WorkerError(Exception):
    """The worker process could not be started.

    Attributes:
        diagnostics: Structured context (executable, target, cause).
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any]) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def _package_root() -> str:
    return str(Path(__file__).resolve().parent.parent)


def build_worker_env(
    config: WorkerConfig,
    base: dict[str, str] | None = None,
) -> dict[str, str]:
    """Build the environment the worker process starts from.

    Starts from *base* (default: a copy of ``os.environ``) or from an empty
    mapping when ``config.inherit_environment`` is false. Sets
    ``PYTHONUNBUFFERED=1`` so stray fd output arrives promptly, and makes sure
    the worker can import this package even when it is not installed.
    The descriptor's own overrides are applied later, inside the worker.

    Returns:
        A new dict suitable for ``env`` of ``create_subprocess_exec``.
    """
    if config.inherit_environment:
        env = dict(os.environ if base is None else base)
    else:
        env = {}
    env["PYTHONUNBUFFERED"] = "1"

    root = _package_root()
    installed = {sysconfig.get_paths()["purelib"], sysconfig.get_paths()["platlib"]}
    if root not in installed:
        existing = env.get("PYTHONPATH")
        env["PYTHONPATH"] = os.pathsep.join([root, existing]) if existing else root
    return env


# ---------------------------------------------------------------------------
# Protocol sequencing
# ---------------------------------------------------------------------------


class ProtocolSequencer:
    """Enforces message ordering on the supervisor side.

    Channel messages pass through in arrival order until the completion
    arrives; the completion is held back until ``finish()`` so that output
    still draining from the raw streams precedes it. Channel messages after
    the completion are dropped. ``finish()`` always yields exactly one
    completion, synthesizing one when the worker never sent it.
    """

    def __init__(self) -> None:
        self._completion: CompletionMessage | None = None
        self._finished = False

    @property
    def completion(self) -> CompletionMessage | None:
        """The completion received from the worker, if any."""
        return self._completion

    def accept_channel(self, message: Message) -> list[Message]:
        """Accept a message read from the channel pipe."""
        if self._finished:
            return []
        if self._completion is not None:
            logger.warning("Dropping %s message received after completion", message.type)
            return []
        if isinstance(message, CompletionMessage):
            self._completion = message
            return []
        return [message]

    def accept_stream(self, message: OutputMessage) -> list[Message]:
        """Accept output read from the worker's raw stdout/stderr."""
        if self._finished or not message.data:
            return []
        return [message]

    def finish(
        self,
        returncode: int | None,
        *,
        timed_out: bool = False,
        timeout_seconds: float | None = None,
    ) -> list[Message]:
        """Close the stream and return its final messages.

        Args:
            returncode: The worker process's return code, if it exited.
            timed_out: Whether the worker was killed for exceeding its timeout.
            timeout_seconds: The limit that was exceeded, for the report.

        Returns:
            Zero or one synthesized failure followed by exactly one completion,
            or nothing if ``finish()`` was already called.
        """
        if self._finished:
            return []
        self._finished = True

        if self._completion is not None:
            return [self._completion]

        if timed_out:
            detail = FailureDetail(
                message=f"Worker timed out after {timeout_seconds}s",
                kind=FaultKind.PROTOCOL,
                error_type="TimeoutError",
            )
            return [FailureMessage(data=detail), CompletionMessage(code=TIMEOUT_STATUS)]

        code = returncode if returncode not in (None, 0) else 1
        detail = FailureDetail(
            message=f"Worker exited without a completion message (return code {returncode})",
            kind=FaultKind.PROTOCOL,
        )
        return [FailureMessage(data=detail), CompletionMessage(code=code)]


# ---------------------------------------------------------------------------
# Process management
# ---------------------------------------------------------------------------


async def _kill_process_group(proc: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """Send SIGTERM to the process group, escalating to SIGKILL after the grace period.

    Killing the whole group also cleans up processes the target spawned.
    """
    pid = proc.pid
    if pid is None:
        return

    try:
        pgid = os.getpgid(pid)
    except (OSError, ProcessLookupError):
        return

    try:
        os.killpg(pgid, signal.SIGTERM)
    except (OSError, ProcessLookupError):
        return

    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except TimeoutError:
        logger.warning("Worker %d ignored SIGTERM; sending SIGKILL", pid)
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)
        with contextlib.suppress(ProcessLookupError):
            await proc.wait()


async def _pump_channel(
    reader: asyncio.StreamReader,
    queue: asyncio.Queue[tuple[_Source, Message] | None],
) -> None:
    discarding = False
    try:
        while True:
            try:
                line = await reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                line = exc.partial
                if not line or discarding:
                    break
            except asyncio.LimitOverrunError as exc:
                if not discarding:
                    logger.warning("Dropping channel line longer than %d bytes", _CHANNEL_LINE_LIMIT)
                discarding = True
                await reader.readexactly(exc.consumed)
                continue
            else:
                if discarding:
                    # Tail of the oversized line.
                    discarding = False
                    continue
            if not line.strip():
                continue
            try:
                message = parse_message(line)
            except ValidationError:
                logger.warning("Skipping malformed channel line: %r", line[:200])
                continue
            queue.put_nowait(("channel", message))
    finally:
        queue.put_nowait(None)


async def _pump_stream(
    stream: asyncio.StreamReader,
    kind: MessageType,
    queue: asyncio.Queue[tuple[_Source, Message] | None],
) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                queue.put_nowait(("stream", OutputMessage(type=kind, data=text)))
        tail = decoder.decode(b"", final=True)
        if tail:
            queue.put_nowait(("stream", OutputMessage(type=kind, data=tail)))
    finally:
        queue.put_nowait(None)


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class WorkerSupervisor:
    """Runs one worker process and exposes its protocol-conforming messages.

    Args:
        descriptor: What the worker executes.
        config: Spawn and timeout settings; defaults to ``WorkerConfig()``.

    Usage::

        supervisor = WorkerSupervisor(WorkDescriptor(target_path="test_x.py"))
        async for message in supervisor.messages():
            ...
    """

    def __init__(self, descriptor: WorkDescriptor, config: WorkerConfig | None = None) -> None:
        self.descriptor = descriptor
        self.config = config if config is not None else WorkerConfig()
        self.timed_out = False
        self.returncode: int | None = None
        self.pid: int | None = None

    def _command(self, channel_fd: int) -> list[str]:
        command = [
            self.config.python_executable,
            "-m",
            _WORKER_MODULE,
            "--channel-fd",
            str(channel_fd),
            "--log-level",
            self.config.log_level,
        ]
        if self.config.log_file is not None:
            command += ["--log-file", self.config.log_file]
        return command

    async def _spawn(self) -> tuple[asyncio.subprocess.Process, asyncio.StreamReader, asyncio.BaseTransport]:
        read_fd, write_fd = os.pipe()
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command(write_fd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_worker_env(self.config),
                pass_fds=(write_fd,),
                start_new_session=True,  # own process group for killpg
            )
        except OSError as exc:
            os.close(read_fd)
            msg = f"Failed to start worker: {exc}"
            raise WorkerError(
                msg,
                diagnostics={
                    "python_executable": self.config.python_executable,
                    "target_path": self.descriptor.target_path,
                    "cause": repr(exc),
                },
            ) from exc
        finally:
            os.close(write_fd)

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=_CHANNEL_LINE_LIMIT)
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader),
            os.fdopen(read_fd, "rb", buffering=0),
        )

        assert proc.stdin is not None
        try:
            proc.stdin.write(self.descriptor.model_dump_json().encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Worker %d exited before reading its descriptor", proc.pid)
        finally:
            proc.stdin.close()

        return proc, reader, transport

    async def messages(self) -> AsyncIterator[Message]:
        """Spawn the worker and yield its messages; the completion comes last.

        Closing the iterator early kills the worker's process group.

        Raises:
            WorkerError: If the worker process cannot be started.
        """
        loop = asyncio.get_running_loop()
        proc, reader, transport = await self._spawn()
        self.pid = proc.pid
        logger.info("Started worker %d for %s", proc.pid, self.descriptor.target_path)

        assert proc.stdout is not None and proc.stderr is not None
        queue: asyncio.Queue[tuple[_Source, Message] | None] = asyncio.Queue()
        pumps = [
            asyncio.create_task(_pump_channel(reader, queue)),
            asyncio.create_task(_pump_stream(proc.stdout, MessageType.STDOUT, queue)),
            asyncio.create_task(_pump_stream(proc.stderr, MessageType.STDERR, queue)),
        ]
        open_pumps = len(pumps)
        sequencer = ProtocolSequencer()
        deadline = loop.time() + self.config.timeout_seconds

        def _accept(item: tuple[_Source, Message]) -> list[Message]:
            source, message = item
            if source == "channel":
                return sequencer.accept_channel(message)
            assert isinstance(message, OutputMessage)
            return sequencer.accept_stream(message)

        try:
            while open_pumps:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=max(deadline - loop.time(), 0))
                except TimeoutError:
                    self.timed_out = True
                    break
                if item is None:
                    open_pumps -= 1
                    continue
                for message in _accept(item):
                    yield message

            if not self.timed_out:
                try:
                    await asyncio.wait_for(proc.wait(), timeout=max(deadline - loop.time(), 0))
                except TimeoutError:
                    self.timed_out = True

            if self.timed_out:
                if sequencer.completion is None:
                    logger.warning(
                        "Worker %d exceeded timeout of %ss", proc.pid, self.config.timeout_seconds
                    )
                else:
                    logger.warning("Worker %d completed but did not exit in time", proc.pid)
                await _kill_process_group(proc, self.config.kill_grace_seconds)
                # Collect whatever was buffered in the pipes before the kill.
                drain_deadline = loop.time() + self.config.kill_grace_seconds
                while open_pumps:
                    try:
                        item = await asyncio.wait_for(
                            queue.get(), timeout=max(drain_deadline - loop.time(), 0)
                        )
                    except TimeoutError:
                        logger.warning("Worker %d pipes still open after kill", proc.pid)
                        break
                    if item is None:
                        open_pumps -= 1
                        continue
                    for message in _accept(item):
                        yield message

            self.returncode = proc.returncode
            for message in sequencer.finish(
                proc.returncode,
                timed_out=self.timed_out,
                timeout_seconds=self.config.timeout_seconds,
            ):
                yield message
            logger.info(
                "Worker %d finished with status %s",
                proc.pid,
                sequencer.completion.code if sequencer.completion else proc.returncode,
            )
        finally:
            if proc.returncode is None:
                await _kill_process_group(proc, self.config.kill_grace_seconds)
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            transport.close()


def stream_worker(
    descriptor: WorkDescriptor,
    config: WorkerConfig | None = None,
) -> AsyncIterator[Message]:
    """Run *descriptor* in a fresh worker and stream its messages.

    Returns:
        An async iterator of messages ending with exactly one completion.
    """
    return WorkerSupervisor(descriptor, config).messages()


async def run_test_file(
    descriptor: WorkDescriptor,
    config: WorkerConfig | None = None,
) -> WorkerOutcome:
    """Run *descriptor* in a fresh worker and collect its outcome.

    Returns:
        The concatenated output, every reported fault, and the final status.
    """
    supervisor = WorkerSupervisor(descriptor, config)
    start = time.monotonic()
    stdout: list[str] = []
    stderr: list[str] = []
    failures: list[FailureDetail] = []
    exit_code = 1

    async for message in supervisor.messages():
        if isinstance(message, OutputMessage):
            (stdout if message.type == MessageType.STDOUT else stderr).append(message.data)
        elif isinstance(message, FailureMessage):
            failures.append(message.data)
        else:
            exit_code = message.code

    return WorkerOutcome(
        stdout="".join(stdout),
        stderr="".join(stderr),
        failures=tuple(failures),
        exit_code=exit_code,
        duration_seconds=time.monotonic() - start,
        timed_out=supervisor.timed_out,
    )
