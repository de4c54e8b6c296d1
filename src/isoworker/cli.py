"""CLI entry point for running one test file in an isolated worker.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``isoworker = "isoworker.cli:main"``. Parses
command-line arguments, loads an optional config YAML file, runs the file
through ``isoworker.supervisor.stream_worker()`` and relays what the worker
produced. The process exits with the worker's completion status.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys
from typing import Any, TextIO

from pydantic import ValidationError
import yaml

from isoworker.logs import configure_logging
from isoworker.models import (
    CompletionMessage,
    FailureMessage,
    MessageType,
    OutputMessage,
    WorkDescriptor,
    WorkerConfig,
)
from isoworker.supervisor import WorkerError, stream_worker


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser``.
    """
    parser = argparse.ArgumentParser(
        prog="isoworker",
        description="Run a single test file in an isolated worker process.",
    )
    parser.add_argument("target", help="Path of the test file to execute.")
    parser.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        help="Arguments passed to the test file as sys.argv[1:].",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional WorkerConfig YAML file.",
    )
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Environment override applied inside the worker (repeatable).",
    )
    parser.add_argument("--cwd", default=None, help="Working directory for the test file.")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Override timeout_seconds from the config.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print every channel message as a JSON line instead of relaying output.",
    )
    return parser


def _load_yaml(path: str) -> dict[str, Any]:
    """Load a YAML file that must contain a mapping.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not parse to a mapping.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"config file not found: {path}"
        raise FileNotFoundError(msg)

    with open(file_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"config file must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)
    return data


def parse_env_overrides(pairs: list[str]) -> dict[str, str]:
    """Parse ``NAME=VALUE`` strings into a mapping; later pairs win.

    Raises:
        ValueError: If a pair has no ``=`` or an empty name.
    """
    env: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            msg = f"invalid environment override {pair!r}, expected NAME=VALUE"
            raise ValueError(msg)
        env[name] = value
    return env


def _relay(
    message: OutputMessage | FailureMessage | CompletionMessage,
    stdout: TextIO,
    stderr: TextIO,
) -> None:
    if isinstance(message, OutputMessage):
        target = stdout if message.type == MessageType.STDOUT else stderr
        target.write(message.data)
        target.flush()
    elif isinstance(message, FailureMessage):
        detail = message.data
        print(f"[isoworker] {detail.kind} error: {detail.message}", file=stderr)
        if detail.stack:
            print(detail.stack.rstrip("\n"), file=stderr)


async def _run(descriptor: WorkDescriptor, config: WorkerConfig, as_json: bool) -> int:
    code = 1
    async for message in stream_worker(descriptor, config):
        if as_json:
            print(message.model_dump_json(), flush=True)
        else:
            _relay(message, sys.stdout, sys.stderr)
        if isinstance(message, CompletionMessage):
            code = message.code
    return code


def main(argv: list[str] | None = None) -> int:
    """Entry point for the isoworker CLI application.

    Returns:
        The worker's completion status, or 1 on a usage/config error.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config_data = _load_yaml(args.config) if args.config is not None else {}
        if args.timeout is not None:
            config_data["timeout_seconds"] = args.timeout
        config = WorkerConfig(**config_data)
        descriptor = WorkDescriptor(
            target_path=args.target,
            env=parse_env_overrides(args.env),
            cwd=args.cwd,
            argv=tuple(args.args),
        )
    except (OSError, ValueError, ValidationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.log_level, config.log_file)

    try:
        return asyncio.run(_run(descriptor, config, args.json))
    except WorkerError as exc:
        print(f"Worker error: {exc}", file=sys.stderr)
        print(f"Diagnostics: {exc.diagnostics}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
