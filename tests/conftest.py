"""Shared fixtures for the isoworker test suite."""

from __future__ import annotations

from pathlib import Path
import textwrap
from typing import Any

from isoworker.channel import WorkerChannel
from isoworker.models import (
    CompletionMessage,
    FailureMessage,
    OutputMessage,
    WorkDescriptor,
    WorkerConfig,
)
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_descriptor(**overrides: Any) -> WorkDescriptor:
    """Build a valid WorkDescriptor with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed WorkDescriptor instance.
    """
    defaults: dict[str, Any] = {"target_path": "test_sample.py"}
    defaults.update(overrides)
    return WorkDescriptor(**defaults)


def make_config(**overrides: Any) -> WorkerConfig:
    """Build a WorkerConfig with a short timeout suitable for tests."""
    defaults: dict[str, Any] = {"timeout_seconds": 30.0, "kill_grace_seconds": 1.0}
    defaults.update(overrides)
    return WorkerConfig(**defaults)


def write_target(directory: Path, content: str, name: str = "test_target.py") -> str:
    """Write a dedented Python file and return its absolute path."""
    path = directory / name
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return str(path.resolve())


class RecordingSink:
    """In-memory message sink that records every delivered message."""

    def __init__(self) -> None:
        self.messages: list[OutputMessage | FailureMessage | CompletionMessage] = []

    def send(self, message: OutputMessage | FailureMessage | CompletionMessage) -> None:
        self.messages.append(message)

    def of_type(self, kind: str) -> list[Any]:
        return [m for m in self.messages if m.type == kind]

    def text(self, kind: str) -> str:
        return "".join(m.data for m in self.of_type(kind))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sink() -> RecordingSink:
    """Return an empty RecordingSink."""
    return RecordingSink()


@pytest.fixture()
def channel(sink: RecordingSink) -> WorkerChannel:
    """Return a WorkerChannel writing to the ``sink`` fixture."""
    return WorkerChannel(sink)
