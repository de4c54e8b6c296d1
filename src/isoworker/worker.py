"""Worker entry point: run one test file in isolation and report its outcome.

Runs inside the worker process spawned by ``isoworker.supervisor``. The
work descriptor arrives as JSON on stdin; messages leave as JSON lines on
the inherited channel file descriptor::

    python -m isoworker.worker --channel-fd 5 < descriptor.json

A run has three phases:

1. Setup: apply the descriptor's environment, working directory and
   arguments; redirect ``sys.stdout``/``sys.stderr`` to the channel; install
   the thread and asyncio fault hooks.
2. Execution: resolve the target to a ``file://`` locator, execute it, then
   wait for every asyncio task it left running.
3. Completion: exactly one completion message. Normal return completes
   with 0; any fault completes with a non-zero status, whichever path
   reports first.
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Iterator
import contextlib
import gc
import logging
import os
import sys
from typing import Any

from pydantic import ValidationError

from isoworker.capture import redirect_output
from isoworker.channel import FdSink, WorkerChannel
from isoworker.faults import FaultInterceptor, describe_exception
from isoworker.loader import ModuleLoader, ScriptLoader, resolve_locator
from isoworker.logs import configure_logging
from isoworker.models import FailureDetail, FaultKind, WorkDescriptor

logger = logging.getLogger(__name__)

FAILURE_STATUS = 1
INVALID_DESCRIPTOR_STATUS = 2

_LEFTOVER_CANCEL_SECONDS = 1.0


@contextlib.contextmanager
def scoped_environment(descriptor: WorkDescriptor) -> Iterator[None]:
    """Apply the descriptor's environment, directory and argv for the block.

    Everything is restored on exit, so the same process can host another
    run without inheriting this one's overrides.

    Raises:
        OSError: If ``descriptor.cwd`` cannot be entered.
    """
    saved_env = dict(os.environ)
    saved_cwd = os.getcwd()
    saved_argv = sys.argv
    try:
        os.environ.update(descriptor.env)
        if descriptor.cwd is not None:
            os.chdir(descriptor.cwd)
        sys.argv = [descriptor.target_path, *descriptor.argv]
        yield
    finally:
        sys.argv = saved_argv
        os.chdir(saved_cwd)
        os.environ.clear()
        os.environ.update(saved_env)


def complete_from_system_exit(
    channel: WorkerChannel,
    exc: SystemExit,
    kind: FaultKind,
) -> None:
    """Complete *channel* the way the interpreter would exit for *exc*.

    Status ``0``/``None`` is success. An integer status is used as the exit
    code and reported as a failure; any other payload is a failure with
    ``FAILURE_STATUS``.
    """
    status = exc.code
    if status is None or status == 0:
        channel.complete(0)
    elif isinstance(status, int):
        channel.failure(describe_exception(exc, kind))
        channel.complete(status)
    else:
        channel.failure(FailureDetail(message=str(status), kind=kind, error_type="SystemExit"))
        channel.complete(FAILURE_STATUS)


def _log_loop_error(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    logger.warning(
        "Worker event loop error outside the run: %s",
        context.get("message", "unknown"),
        exc_info=context.get("exception"),
    )


def _run_in_loop(descriptor: WorkDescriptor, channel: WorkerChannel) -> None:
    """Run the worker on a fresh event loop.

    ``SystemExit`` and ``KeyboardInterrupt`` raised inside a background task
    leave the loop instead of reaching its exception handler, so they are
    reported here. The task that raised them is finalized later, possibly
    after the run's hooks are gone; the loop's base handler sends that
    report to the worker log instead of the real stderr.
    """
    with asyncio.Runner() as runner:
        runner.get_loop().set_exception_handler(_log_loop_error)
        try:
            runner.run(run_worker(descriptor, channel))
        except SystemExit as exc:
            logger.info("Background task raised SystemExit(%r)", exc.code)
            complete_from_system_exit(channel, exc, FaultKind.UNHANDLED_ASYNC)
        except KeyboardInterrupt as exc:
            channel.failure(describe_exception(exc, FaultKind.UNHANDLED_ASYNC))
            channel.complete(FAILURE_STATUS)


class WorkerEntryPoint:
    """Executes one target file and reports every observable effect.

    Args:
        descriptor: What to run and under which environment.
        channel: Where messages go; owns the completion guard.
        loader: Loader capability, ``ScriptLoader`` by default.
    """

    def __init__(
        self,
        descriptor: WorkDescriptor,
        channel: WorkerChannel,
        loader: ModuleLoader | None = None,
    ) -> None:
        self._descriptor = descriptor
        self._channel = channel
        self._loader = loader if loader is not None else ScriptLoader()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._main: asyncio.Task[None] | None = None
        self._known_tasks: set[asyncio.Task] = set()

    async def run(self) -> int:
        """Run the target and return the status of the completion message."""
        self._loop = asyncio.get_running_loop()
        self._known_tasks = asyncio.all_tasks()

        with contextlib.ExitStack() as stack:
            try:
                stack.enter_context(scoped_environment(self._descriptor))
            except OSError as exc:
                self._channel.failure(describe_exception(exc, FaultKind.LOAD))
                self._channel.complete(FAILURE_STATUS)
                return FAILURE_STATUS
            stack.enter_context(redirect_output(self._channel))
            stack.enter_context(FaultInterceptor(self._on_fault))

            self._main = asyncio.create_task(self._execute(), name="isoworker-execute")
            try:
                await asyncio.wait([self._main])
            finally:
                await self._cancel_leftovers()

        # The guard guarantees a completion even if the execution task was
        # cancelled before reaching its own.
        self._channel.complete(FAILURE_STATUS)
        code = self._channel.exit_code
        return FAILURE_STATUS if code is None else code

    async def _execute(self) -> None:
        try:
            locator = resolve_locator(self._descriptor.target_path, self._descriptor.cwd)
            logger.info("Executing %s", locator)
            await self._loader.execute(locator)
            await self._drain_tasks()
        except SystemExit as exc:
            complete_from_system_exit(self._channel, exc, FaultKind.LOAD)
            return
        except (Exception, KeyboardInterrupt) as exc:
            self._channel.failure(describe_exception(exc, FaultKind.LOAD))
            self._channel.complete(FAILURE_STATUS)
            return
        self._channel.complete(0)

    async def _drain_tasks(self) -> None:
        """Wait for tasks the target left behind, then surface lost exceptions.

        A task exception nobody retrieved is reported by the loop's exception
        handler when the task is garbage collected. Finished tasks are
        released and collected as soon as they complete, so a failure is
        reported even while other tasks keep running.
        """
        current = asyncio.current_task()
        while True:
            pending = {
                task
                for task in asyncio.all_tasks()
                if task is not current and task not in self._known_tasks
            }
            if not pending:
                break
            logger.debug("Waiting for %d background task(s)", len(pending))
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            del done, pending
            gc.collect()
        gc.collect()

    def _on_fault(self, detail: FailureDetail) -> None:
        self._channel.failure(detail)
        if self._channel.complete(FAILURE_STATUS):
            logger.info("Worker failed: %s", detail.message)
        self._abort()

    def _abort(self) -> None:
        if self._main is None or self._main.done() or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._main.cancel)
        except RuntimeError:
            logger.debug("Event loop closed before the execution task could be cancelled")

    async def _cancel_leftovers(self) -> None:
        current = asyncio.current_task()
        leftovers = {
            task
            for task in asyncio.all_tasks()
            if task is not current and task not in self._known_tasks and not task.done()
        }
        if not leftovers:
            return
        for task in leftovers:
            task.cancel()
        _, still_running = await asyncio.wait(leftovers, timeout=_LEFTOVER_CANCEL_SECONDS)
        if still_running:
            logger.warning("%d task(s) ignored cancellation", len(still_running))


async def run_worker(
    descriptor: WorkDescriptor,
    channel: WorkerChannel,
    loader: ModuleLoader | None = None,
) -> int:
    """Execute *descriptor* and report through *channel*.

    Returns:
        The status carried by the completion message.
    """
    return await WorkerEntryPoint(descriptor, channel, loader).run()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m isoworker.worker",
        description="Run one test file read from a JSON work descriptor on stdin.",
    )
    parser.add_argument(
        "--channel-fd",
        type=int,
        required=True,
        help="Inherited file descriptor that receives JSON-line messages.",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    parser.add_argument("--log-file", default=None, help="Optional log file path.")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point of the worker process.

    Returns:
        The status carried by the completion message, used as exit status.
    """
    args = _build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file, console=False)

    sink = FdSink(args.channel_fd)
    channel = WorkerChannel(sink)
    try:
        try:
            descriptor = WorkDescriptor.model_validate_json(sys.stdin.buffer.read())
        except ValidationError as exc:
            channel.failure(
                FailureDetail(
                    message=f"Invalid work descriptor: {exc}",
                    kind=FaultKind.LOAD,
                    error_type="ValidationError",
                )
            )
            channel.complete(INVALID_DESCRIPTOR_STATUS)
        else:
            _run_in_loop(descriptor, channel)
    except Exception as exc:
        logger.exception("Worker crashed outside the target")
        channel.failure(describe_exception(exc, FaultKind.LOAD))
    finally:
        channel.complete(FAILURE_STATUS)
        sink.close()

    code = channel.exit_code
    return FAILURE_STATUS if code is None else code


if __name__ == "__main__":
    sys.exit(main())
