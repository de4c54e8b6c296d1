"""Core data models for the isolated test worker.

Defines the work descriptor handed to a worker, the message shapes that
travel over the supervisor channel, the supervisor configuration, and the
aggregated outcome of one worker run. Every other module (channel, capture,
worker, supervisor, cli) builds on these types.

Wire format:
    One JSON object per line, discriminated on ``type``::

        {"type": "stdout", "data": "hello\\n"}
        {"type": "stderr", "data": "warning\\n"}
        {"type": "error", "data": {"message": "boom", "stack": "..."}}
        {"type": "exit", "code": 0}
"""

from __future__ import annotations

from enum import StrEnum
import sys
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class MessageType(StrEnum):
    """Discriminator value of every supervisor channel message."""

    STDOUT = "stdout"
    STDERR = "stderr"
    ERROR = "error"
    EXIT = "exit"


class FaultKind(StrEnum):
    """Where a reported fault originated.

    ``LOAD`` covers anything raised while resolving or executing the target
    file, ``UNCAUGHT`` an exception escaping a thread started by the target,
    ``UNHANDLED_ASYNC`` an asyncio task exception nobody retrieved, and
    ``PROTOCOL`` a fault synthesized by the supervisor (missing completion,
    timeout).
    """

    LOAD = "load"
    UNCAUGHT = "uncaught"
    UNHANDLED_ASYNC = "unhandled_async"
    PROTOCOL = "protocol"


# ---------------------------------------------------------------------------
# Work descriptor
# ---------------------------------------------------------------------------


class WorkDescriptor(BaseModel):
    """Input payload identifying what a worker executes and under what environment.

    Created once by the orchestrator and consumed exactly once by a worker.
    Whether ``target_path`` exists is checked when the file is loaded, so a
    missing file is reported as a load fault rather than rejected here.

    Attributes:
        target_path: Path (absolute, or relative to ``cwd``) or ``file://``
            locator of the file to execute.
        env: Environment variables applied before the target is loaded.
        cwd: Working directory used for relative resolution.
        argv: Extra arguments exposed to the target as ``sys.argv[1:]``.
    """

    model_config = ConfigDict(frozen=True)

    target_path: str
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    argv: tuple[str, ...] = ()

    @field_validator("target_path")
    @classmethod
    def _must_be_non_empty(cls, v: str) -> str:
        """Validate that target_path is not blank."""
        if not v.strip():
            msg = "target_path must be a non-empty path"
            raise ValueError(msg)
        return v


# ---------------------------------------------------------------------------
# Supervisor channel messages
# ---------------------------------------------------------------------------


class OutputMessage(BaseModel):
    """A fragment written by the target to its standard output or error."""

    model_config = ConfigDict(frozen=True)

    type: Literal["stdout", "stderr"]
    data: str


class TraceFrame(BaseModel):
    """One frame of a fault's traceback."""

    model_config = ConfigDict(frozen=True)

    filename: str
    lineno: int | None = None
    name: str


class FailureDetail(BaseModel):
    """Structured description of a single fault.

    Attributes:
        message: Human-readable description (``str(exc)`` when available).
        stack: Formatted traceback text, empty when none is available.
        kind: Origin of the fault.
        error_type: Qualified exception class name, if the fault was an exception.
        frames: Traceback frames, innermost last.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    stack: str = ""
    kind: FaultKind = FaultKind.LOAD
    error_type: str | None = None
    frames: tuple[TraceFrame, ...] = ()


class FailureMessage(BaseModel):
    """Report of a fault encountered during execution."""

    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    data: FailureDetail


class CompletionMessage(BaseModel):
    """Terminal signal: the worker has finished (``code`` 0 means success)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["exit"] = "exit"
    code: int


WorkerMessage = Annotated[
    OutputMessage | FailureMessage | CompletionMessage,
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter[OutputMessage | FailureMessage | CompletionMessage] = (
    TypeAdapter(WorkerMessage)
)


def parse_message(line: str | bytes) -> OutputMessage | FailureMessage | CompletionMessage:
    """Decode one JSON line from the supervisor channel.

    Args:
        line: A single JSON document, with or without its trailing newline.

    Returns:
        The matching message model.

    Raises:
        pydantic.ValidationError: If the line is not a valid message.
    """
    return _MESSAGE_ADAPTER.validate_json(line)


def encode_message(message: OutputMessage | FailureMessage | CompletionMessage) -> bytes:
    """Encode a message as one newline-terminated JSON line."""
    return message.model_dump_json().encode("utf-8") + b"\n"


# ---------------------------------------------------------------------------
# Configuration & outcome
# ---------------------------------------------------------------------------


class WorkerConfig(BaseModel):
    """Supervisor-side settings for spawning and watching a worker.

    Attributes:
        timeout_seconds: Wall-clock limit before the worker is killed.
        kill_grace_seconds: Delay between SIGTERM and SIGKILL.
        python_executable: Interpreter used to start the worker process.
        inherit_environment: Whether the worker starts from the parent's
            environment (``False`` starts from an empty one).
        log_level: Logging level string.
        log_file: Optional log file path, shared by parent and worker.
    """

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = 300.0
    kill_grace_seconds: float = 5.0
    python_executable: str = Field(default_factory=lambda: sys.executable)
    inherit_environment: bool = True
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("timeout_seconds", "kill_grace_seconds")
    @classmethod
    def _must_be_positive(cls, v: float) -> float:
        """Validate that durations are strictly positive."""
        if v <= 0:
            msg = "Value must be > 0"
            raise ValueError(msg)
        return v


class WorkerOutcome(BaseModel):
    """Everything observed from one worker run, in arrival order per stream.

    Attributes:
        stdout: Concatenated standard output fragments.
        stderr: Concatenated standard error fragments.
        failures: Every reported fault, in arrival order.
        exit_code: Status carried by the completion message.
        duration_seconds: Wall-clock time from spawn to completion.
        timed_out: Whether the worker was killed for exceeding its timeout.
    """

    model_config = ConfigDict(frozen=True)

    stdout: str
    stderr: str
    failures: tuple[FailureDetail, ...] = ()
    exit_code: int
    duration_seconds: float
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        """Whether the file ran to completion without any reported fault."""
        return self.exit_code == 0 and not self.failures
